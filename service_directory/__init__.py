"""Directory access service."""
