"""Payments service with SQLite storage, inbox/outbox messaging and a WSGI API."""

__version__ = "0.1.0"