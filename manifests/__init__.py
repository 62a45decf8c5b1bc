"""Manifests package for DocManifest.

Provides prompt-format detection, manifest building, template rendering,
prompt validation and prompt generation.
"""

from .models import (
    PromptFormat,
    FallbackFormat,
    FormatDetectionResult,
    IDEManifest,
    FileContext,
    PromptRequest,
    PromptValidationResult,
    PromptGenerationResult,
)
from .detector import FormatDetector, detect_format
from .classifier import LLMClassifier, parse_classification
from .builder import ManifestBuilder, build_manifest
from .renderer import TemplateRenderer, render_template
from .validator import PromptValidator, validate_prompt
from .generator import PromptGenerator

__all__ = [
    # Models
    'PromptFormat',
    'FallbackFormat',
    'FormatDetectionResult',
    'IDEManifest',
    'FileContext',
    'PromptRequest',
    'PromptValidationResult',
    'PromptGenerationResult',

    # Detection
    'FormatDetector',
    'detect_format',
    'LLMClassifier',
    'parse_classification',

    # Manifests and prompts
    'ManifestBuilder',
    'build_manifest',
    'TemplateRenderer',
    'render_template',
    'PromptValidator',
    'validate_prompt',
    'PromptGenerator',
]
