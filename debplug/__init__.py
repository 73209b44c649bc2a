"""
debplug - Lifecycle engine for Debian-packaged appliance plugins.

This is the main package that exports the public API of the engine.
"""

__version__ = "0.1.0"

from debplug.config import Settings, load_settings
from debplug.plugin.errors import PluginError
from debplug.plugin.installer import InstallResult, InstallState, UninstallResult
from debplug.plugin.manager import PluginManager, UpdateStatus

__all__ = [
    "__version__",
    "InstallResult",
    "InstallState",
    "PluginError",
    "PluginManager",
    "Settings",
    "UninstallResult",
    "UpdateStatus",
    "load_settings",
]
