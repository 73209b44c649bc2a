"""
debplug Plugin Engine - Release-driven plugin lifecycle.

This module handles:
- Release resolution and caching
- Architecture-aware artifact download and checksum verification
- Staged install/update/uninstall with rollback
- Lifecycle hooks and the dpkg driver
- Background task execution
"""

__all__ = []
