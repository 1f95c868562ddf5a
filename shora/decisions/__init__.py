"""Decision voting and lifecycle."""
