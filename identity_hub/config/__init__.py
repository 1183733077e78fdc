"""Configuration module for the identity hub."""
from .settings import AppConfig, DirectorySettings, MatchingSettings, load_settings

__all__ = ["AppConfig", "DirectorySettings", "MatchingSettings", "load_settings"]
