"""Core infrastructure: logging, exceptions and database lifecycle."""
