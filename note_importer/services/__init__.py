"""Pipeline services for Stage 1 and the shared coordination layer."""
