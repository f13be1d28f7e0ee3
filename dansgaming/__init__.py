"""DansGaming community staff portal."""

__version__ = "1.0.0"
