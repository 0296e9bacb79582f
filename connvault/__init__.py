"""connvault: encrypted storage for named database connection profiles."""

__version__ = "0.1.0"
