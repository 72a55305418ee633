"""Payment gateway reconciliation engine."""

__version__ = "1.0.0"
