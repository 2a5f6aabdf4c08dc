from mkwebuser.config.settings import (
    AppSettings,
    HostSettings,
    ProvisioningSettings,
    get_settings,
)

__all__ = [
    "AppSettings",
    "HostSettings",
    "ProvisioningSettings",
    "get_settings",
]
