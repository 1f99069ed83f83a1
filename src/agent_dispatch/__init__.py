"""Task dispatch and recovery core for agents operating infrastructure-as-code."""

__version__ = "0.1.0"
