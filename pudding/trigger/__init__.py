"""Cron and webhook triggers, their models, repositories and request handlers."""