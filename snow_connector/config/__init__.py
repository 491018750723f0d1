"""Configuration module for the ServiceNow connector."""
from .settings import AppConfig, load_settings

__all__ = ["AppConfig", "load_settings"]
