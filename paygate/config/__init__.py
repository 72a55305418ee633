"""Configuration package for the payment gateway service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
