"""debugforce - parallel hypothesis-driven debugging agents."""

__version__ = "0.1.0"
