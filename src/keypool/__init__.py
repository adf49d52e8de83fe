"""Quota-aware credential pool and SSE relay for chat-completion APIs."""

__version__ = "0.1.0"
