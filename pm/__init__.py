"""
pm - debplug plugin management CLI tool.

This is the command-line interface for the plugin lifecycle engine.
Supports installation, removal, update, query and release listing.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
