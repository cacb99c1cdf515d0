"""Configuration package for orderflow."""
from .settings import PricingConfig, Settings, get_settings

__all__ = ["PricingConfig", "Settings", "get_settings"]
