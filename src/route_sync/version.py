"""Version information for route-sync."""

APP_VERSION = "0.4.0"

__all__ = ["APP_VERSION"]
