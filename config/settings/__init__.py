from .base import MatchingSettings, get_settings

__all__ = ["MatchingSettings", "get_settings"]
