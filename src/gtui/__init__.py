"""gtui - terminal chat client for the gro agent."""

__version__ = "0.1.0"
