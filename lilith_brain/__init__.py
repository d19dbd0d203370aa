"""Twin-persona agent brain."""

__version__ = "0.4.0"
