"""Add custom CSS and tray icons to Signal Desktop."""

__version__ = "1.0.0"
