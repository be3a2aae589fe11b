"""Trip invitation and ephemeral chat coordination core."""

__version__ = "0.1.0"
