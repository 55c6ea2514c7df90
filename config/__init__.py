from .settings import DEFAULT_TARGET_MARKETS, Settings, get_settings

__all__ = ["Settings", "get_settings", "DEFAULT_TARGET_MARKETS"]
