"""Core infrastructure: logging, exceptions and HTTP error handling."""
