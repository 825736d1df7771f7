# site_snap/__init__.py
"""
SiteSnap package initializer.
Defines package version and exposes CLI.
"""
__version__ = "0.1.0"

from site_snap.cli import cli  # noqa: E402
