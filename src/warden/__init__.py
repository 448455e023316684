"""Warden: default-deny permission evaluation for users, agents and plugins."""

__version__ = "0.1.0"
