"""
Defines the application's version string.

This is the single source of truth for the service's version number.
It is reported by the info endpoint and used for packaging.
"""

__version__ = "0.4.0"
