"""The source controller module.

This module provides the Source Fetcher that retrieves the manifest bundle of
an Application from a git repository, an OCI artifact or a local directory.
"""

from .cache import SourceCache
from .fetcher import SourceFetcher

__all__ = [
    "SourceCache",
    "SourceFetcher",
]
