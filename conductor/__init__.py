"""Cross-environment autonomous task orchestration runtime."""

__version__ = "0.3.0"
