"""Reference and guide documentation builder for a typesetting language."""

__version__ = "0.4.0"
