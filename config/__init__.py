"""Configuration module for DocManifest.

Provides pipeline settings loading and component construction.
"""

from .settings import (
    DEFAULT_CONFIG,
    PipelineSettings,
    load_settings
)

__all__ = [
    'DEFAULT_CONFIG',
    'PipelineSettings',
    'load_settings'
]
