"""Warden: capability-based authorization and resource accounting for editor plugins."""

__version__ = "0.1.0"
