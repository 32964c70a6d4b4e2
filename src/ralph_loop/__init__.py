"""Supervisor for long-running unattended coding-agent loops."""

__version__ = "0.4.0"
