"""Background task engine with dependencies, retries, and idempotent submission."""

__version__ = "0.1.0"
