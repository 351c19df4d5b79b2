"""Configuration loading and schema."""

from storyloom.config.loader import load_config
from storyloom.config.schema import AppConfig, AppConfigRoot

__all__ = ["AppConfig", "AppConfigRoot", "load_config"]
