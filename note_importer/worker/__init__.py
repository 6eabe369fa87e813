"""Stage 2 background worker."""
