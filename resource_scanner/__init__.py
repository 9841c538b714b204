"""Browser-driven resource scanner for large domain lists."""

__version__ = "1.0.0"
