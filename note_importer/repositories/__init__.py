"""Persistence layer for the processing queue."""
