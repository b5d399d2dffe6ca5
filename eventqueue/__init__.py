"""Durable, polling-driven event/job queue on SQLite."""

__version__ = "0.1.0"
