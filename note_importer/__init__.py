"""Note Importer - two-stage analysis and upload queue for a remote note service."""

__version__ = "1.0.0"
