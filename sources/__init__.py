"""Sources package for DocManifest.

Provides tool source loading and validation.
"""

from .loader import (
    ToolSource,
    SourceLoader,
    load_source,
    load_all_sources
)

__all__ = [
    'ToolSource',
    'SourceLoader',
    'load_source',
    'load_all_sources'
]
