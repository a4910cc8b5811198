"""epubmath - EPUB builder with cached, rasterized math."""

from .version import __version__

__all__ = ["__version__"]
