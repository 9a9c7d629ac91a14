"""NodeRef backend - authentication and credential service for content servers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("noderef")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = ["__version__"]
