"""Core infrastructure: configuration, database, events."""
