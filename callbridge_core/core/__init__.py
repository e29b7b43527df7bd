"""Core infrastructure: logging, events, lifecycle and Redis access."""
