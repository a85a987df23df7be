"""Version information for nydus-localdisk."""

__version__ = "0.2.0"
