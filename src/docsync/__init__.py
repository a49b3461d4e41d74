"""Local folder to knowledge-base sync agent."""

__version__ = "1.0.0"
