"""Database package for the payment gateway service."""
from .connection import build_session_factory, create_engine_from_settings, init_db
from .models import AuditLog, Base, Order, Payment

__all__ = [
    "AuditLog",
    "Base",
    "Order",
    "Payment",
    "build_session_factory",
    "create_engine_from_settings",
    "init_db",
]
