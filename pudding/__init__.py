"""Delay-message scheduling with cron and webhook triggers."""

__version__ = "0.1.0"