"""Bidirectional library folder <-> Dropbox synchronization service."""

__version__ = "0.1.0"
