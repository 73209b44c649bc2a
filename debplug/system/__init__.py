"""
debplug System Integration - Host-side services the engine talks to.
"""

__all__ = []
