"""Upload storage on disk or in object buckets, file locks, hooks and server settings."""

__version__ = "0.1.0"