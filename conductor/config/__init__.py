"""Configuration registries for the conductor runtime."""
