"""Core infrastructure: configuration, exception taxonomy, shared constants."""
