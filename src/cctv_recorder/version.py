"""Version information for the CCTV recorder service."""

APP_VERSION = "0.4.0"

__all__ = ["APP_VERSION"]
