"""Convert Nydus images from a registry into GPT localdisk images."""

from .__version__ import __version__

__all__ = ["__version__"]
