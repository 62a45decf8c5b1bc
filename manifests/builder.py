"""Manifest construction from format detection output and a chunk sample."""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List

from .models import FormatDetectionResult, IDEManifest, PromptFormat, validation_for
from .validator import is_balanced_xml

logger = logging.getLogger(__name__)

BASE_SYSTEM_MESSAGE = ("You are a helpful assistant specialized in this IDE. "
                       "Provide clear, concise responses tailored to the user's needs.")
BASE_USER_MESSAGE = 'What would you like to know about this IDE?'

BASE_RULES = [
    'Must have both system and user sections',
    'Each section should be non-empty',
    'Should follow the IDE-specific format guidelines',
    'Code examples should be properly formatted',
]

FORMAT_RULES: Dict[PromptFormat, List[str]] = {
    PromptFormat.JSON: [
        'Valid JSON syntax required',
        'Must include "system" field',
        'Must include "user" field',
        'All strings must be properly escaped',
    ],
    PromptFormat.MARKDOWN: [
        'Valid Markdown syntax required',
        'Must have System and User sections as headers',
        'Code blocks should use proper language fencing',
        'Links should use Markdown link syntax',
    ],
    PromptFormat.PLAINTEXT: [
        'Plain text format with clear section separators',
        'Sections must be prefixed with UPPERCASE labels',
        'Each section should be on its own line',
        'No special characters required',
    ],
    PromptFormat.CLI: [
        'Valid command-line syntax required',
        'Flags must use proper -- or - notation',
        'Arguments must be properly quoted',
        'Option names should be lowercase with hyphens',
    ],
    PromptFormat.XML: [
        'Valid XML syntax required',
        'Must have system and user root elements',
        'All tags must be properly closed',
        'Special characters must be properly escaped',
    ],
}


def json_template() -> str:
    return json.dumps({
        'system': BASE_SYSTEM_MESSAGE,
        'user': BASE_USER_MESSAGE,
        'context': {
            'ide_specific_features': [],
            'code_examples': [],
            'best_practices': [],
        },
    }, indent=2)


def markdown_template() -> str:
    return f"""# Prompt Template

## System

{BASE_SYSTEM_MESSAGE}

### IDE-Specific Features
- Feature 1
- Feature 2
- Feature 3

### Best Practices
1. Practice 1
2. Practice 2
3. Practice 3

## User

{BASE_USER_MESSAGE}

### Context
Include relevant information about your task or question.

### Examples
Provide examples if applicable.
"""


def plaintext_template() -> str:
    return f"""SYSTEM:
{BASE_SYSTEM_MESSAGE}

IDE-SPECIFIC FEATURES:
- Feature 1
- Feature 2
- Feature 3

BEST PRACTICES:
1. Practice 1
2. Practice 2
3. Practice 3

USER:
{BASE_USER_MESSAGE}

CONTEXT:
Include relevant information about your task or question.

EXAMPLES:
Provide examples if applicable.
"""


def cli_template() -> str:
    return (f'--system "{BASE_SYSTEM_MESSAGE}" --user "{BASE_USER_MESSAGE}" '
            '--context "Include relevant information about your task or question." --format json')


def xml_template() -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<prompt>
  <system>
    <base>{BASE_SYSTEM_MESSAGE}</base>
    <ide_features>
      <feature>Feature 1</feature>
      <feature>Feature 2</feature>
      <feature>Feature 3</feature>
    </ide_features>
    <best_practices>
      <practice>Practice 1</practice>
      <practice>Practice 2</practice>
      <practice>Practice 3</practice>
    </best_practices>
  </system>
  <user>
    <question>{BASE_USER_MESSAGE}</question>
    <context>Include relevant information about your task or question.</context>
    <examples>Provide examples if applicable.</examples>
  </user>
</prompt>
"""


TEMPLATE_GENERATORS = {
    PromptFormat.JSON: json_template,
    PromptFormat.MARKDOWN: markdown_template,
    PromptFormat.PLAINTEXT: plaintext_template,
    PromptFormat.CLI: cli_template,
    PromptFormat.XML: xml_template,
}


def check_template(prompt_format: PromptFormat, template: str) -> List[str]:
    """Structural sanity problems of a stored template (empty list when fine)."""
    if not template or not template.strip():
        return [f"Template for format {prompt_format.value} is empty"]

    problems = []
    if prompt_format == PromptFormat.JSON:
        try:
            json.loads(template)
        except ValueError as e:
            problems.append(f"Invalid JSON template: {e}")
    elif prompt_format == PromptFormat.XML:
        if '<' not in template:
            problems.append('XML template appears to be malformed')
        elif not is_balanced_xml(template):
            problems.append('XML template has mismatched tags')
    elif prompt_format == PromptFormat.MARKDOWN:
        if '#' not in template:
            problems.append('Markdown template should contain headers')
    elif prompt_format == PromptFormat.CLI:
        if '--' not in template:
            problems.append('CLI template may be missing flags')
    elif prompt_format == PromptFormat.PLAINTEXT:
        if not any(label in template for label in ('SYSTEM:', 'system:', 'System:')):
            problems.append('Plaintext template may be missing system section')
    return problems


def extract_unique_sources(chunks: Iterable) -> List[str]:
    """Sorted, deduplicated non-empty ``source_url`` values of chunk objects or dicts."""
    sources = set()
    for chunk in chunks:
        source = chunk.get('source_url') if isinstance(chunk, dict) else getattr(chunk, 'source_url', None)
        if source:
            sources.add(source)
    return sorted(sources)


class ManifestBuilder:
    """Builds an IDEManifest from a detection result and sampled chunks."""

    def __init__(self, include_all_formats: bool = True, validate_templates: bool = True):
        self.include_all_formats = include_all_formats
        self.validate_templates = validate_templates

    def build_manifest(self,
                       tool_id: str,
                       tool_name: str,
                       detection: FormatDetectionResult,
                       chunks: Iterable,
                       version: str = 'latest') -> IDEManifest:
        """Build a manifest.

        Args:
            tool_id: Tool identifier, used as the manifest id
            tool_name: Display name of the tool
            detection: Format detection result
            chunks: Chunk sample (Chunk objects or dicts with ``source_url``)
            version: Documentation version recorded on the manifest

        Returns:
            A validated IDEManifest
        """
        chunks = list(chunks)
        preferred = PromptFormat(detection.preferred_format)
        templates = self.generate_templates(preferred)

        if self.validate_templates:
            for prompt_format, template in templates.items():
                for problem in check_template(prompt_format, template):
                    logger.warning(f"Template validation warning for {prompt_format.value}: {problem}")

        fallbacks = [item.format for item in detection.fallback_formats if item.format != preferred]

        manifest = IDEManifest(
            id=tool_id,
            name=tool_name,
            preferred_format=preferred,
            fallback_formats=fallbacks,
            validation=self.generate_validation_rules(preferred),
            templates=templates,
            doc_version=version or 'latest',
            doc_sources=extract_unique_sources(chunks),
            trusted=True,
            last_updated=datetime.now(timezone.utc),
        )
        logger.info(f"Built manifest for {tool_id}: preferred={preferred.value}, "
                    f"fallbacks={[fmt.value for fmt in fallbacks]}, sources={len(manifest.doc_sources)}")
        return manifest

    def generate_templates(self, preferred: PromptFormat) -> Dict[PromptFormat, str]:
        if self.include_all_formats:
            return {prompt_format: generator() for prompt_format, generator in TEMPLATE_GENERATORS.items()}
        return {preferred: TEMPLATE_GENERATORS[preferred]()}

    @staticmethod
    def generate_validation_rules(prompt_format: PromptFormat):
        return validation_for(prompt_format, BASE_RULES + FORMAT_RULES[prompt_format])


# Convenience functions
def build_manifest(tool_id: str, tool_name: str, detection: FormatDetectionResult,
                   chunks: Iterable, version: str = 'latest', **options) -> IDEManifest:
    """Convenience function to build a manifest with a fresh builder."""
    return ManifestBuilder(**options).build_manifest(tool_id, tool_name, detection, chunks, version)
