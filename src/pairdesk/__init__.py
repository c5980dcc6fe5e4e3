"""Per-project AI pair-programming worker orchestration."""

__version__ = "0.4.0"
