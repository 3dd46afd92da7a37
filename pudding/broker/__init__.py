"""Delay storage, real-time connectors, the scheduler and its request handler."""