from outpost.config.provider import ProviderDefaults
from outpost.config.settings import OutpostSettings, get_settings, reload_settings

__all__ = ["OutpostSettings", "ProviderDefaults", "get_settings", "reload_settings"]
