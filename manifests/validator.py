"""Structural validation of rendered prompts, per format."""

import json
import logging
import re
from typing import Iterable, Optional

from .models import PromptFormat, PromptValidationResult

logger = logging.getLogger(__name__)

PLAINTEXT_SECTIONS = ['SYSTEM:', 'TASK:', 'LANGUAGE:', 'CONSTRAINTS:', 'FILES:']
CLI_REQUIRED_FLAGS = ['--system', '--user', '--language']

XML_TAG = re.compile(r'<(/?)([a-zA-Z0-9_:-]+)(\s[^>]*)?>')

MARKDOWN_SYSTEM = re.compile(r'##\s+System', re.IGNORECASE)
MARKDOWN_TASK = re.compile(r'###?\s+Task', re.IGNORECASE)
MARKDOWN_USER_GUIDANCE = re.compile(r'##\s+User Guidance', re.IGNORECASE)
CLI_QUOTED_SYSTEM = re.compile(r'--system\s+"[^"]+"')
CLI_SYSTEM = re.compile(r'--system\s+', re.IGNORECASE)
CLI_FORMAT = re.compile(r'--format\s+', re.IGNORECASE)


def is_balanced_xml(xml: str) -> bool:
    """Stack-based tag balance check. Declarations and self-closing tags are ignored."""
    stack = []
    for match in XML_TAG.finditer(xml):
        tag, closing, name = match.group(0), match.group(1), match.group(2)
        if tag.endswith('/>'):
            continue
        if closing:
            if not stack or stack.pop() != name:
                return False
        else:
            stack.append(name)
    return not stack


def _load_json_object(prompt: str):
    try:
        parsed = json.loads(prompt)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _non_empty_string(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


class PromptValidator:
    """Checks rendered prompts for the structure their format requires.

    Errors make a prompt invalid. Warnings are advisory and never change
    ``is_valid``.
    """

    def validate(self, prompt_format, prompt: str,
                 validation_hints=None) -> PromptValidationResult:
        """Validate a rendered prompt.

        Args:
            prompt_format: One of the known prompt formats
            prompt: Rendered prompt text
            validation_hints: Manifest validation block (anything with ``rules``)
                or a plain list of rule strings

        Returns:
            PromptValidationResult with errors and warnings
        """
        format_name = PromptFormat(prompt_format).value
        result = PromptValidationResult(format=format_name, is_valid=True)

        if not prompt or not prompt.strip():
            result.errors.append('Prompt output is empty')
            result.is_valid = False
            return result

        checks = {
            PromptFormat.JSON.value: self._validate_json,
            PromptFormat.MARKDOWN.value: self._validate_markdown,
            PromptFormat.PLAINTEXT.value: self._validate_plaintext,
            PromptFormat.CLI.value: self._validate_cli,
            PromptFormat.XML.value: self._validate_xml,
        }
        checks[format_name](prompt, result)

        rules = self._rules_from_hints(validation_hints)
        if rules:
            self._apply_validation_hints(result, rules, prompt)

        result.is_valid = not result.errors
        return result

    def _validate_json(self, prompt: str, result: PromptValidationResult):
        try:
            parsed = json.loads(prompt)
        except ValueError as e:
            result.errors.append(f"Invalid JSON output: {e}")
            return

        if not isinstance(parsed, dict):
            result.errors.append('JSON prompt must be an object')
            return

        if not _non_empty_string(parsed.get('system')):
            result.errors.append('JSON prompt is missing a non-empty "system" field')

        if not _non_empty_string(parsed.get('user')):
            result.errors.append('JSON prompt is missing a non-empty "user" field')

        if parsed.get('context') is not None and not isinstance(parsed['context'], dict):
            result.errors.append('JSON prompt has an invalid "context" structure')

    def _validate_markdown(self, prompt: str, result: PromptValidationResult):
        if not MARKDOWN_SYSTEM.search(prompt):
            result.errors.append('Markdown prompt is missing the "## System" section')

        if not MARKDOWN_TASK.search(prompt):
            result.errors.append('Markdown prompt is missing a task section')

        if not MARKDOWN_USER_GUIDANCE.search(prompt):
            result.warnings.append('Markdown prompt does not include a "## User Guidance" section')

        if '```' not in prompt:
            result.warnings.append('Markdown prompt does not include any fenced code blocks for file context')

    def _validate_plaintext(self, prompt: str, result: PromptValidationResult):
        for section in PLAINTEXT_SECTIONS:
            if section not in prompt:
                result.errors.append(f'Plaintext prompt is missing the "{section}" section')

    def _validate_cli(self, prompt: str, result: PromptValidationResult):
        for flag in CLI_REQUIRED_FLAGS:
            if flag not in prompt:
                result.errors.append(f'CLI prompt is missing the "{flag}" flag')

        if not CLI_QUOTED_SYSTEM.search(prompt):
            result.warnings.append('CLI prompt system message may not be properly quoted')

        if not CLI_FORMAT.search(prompt):
            result.warnings.append('CLI prompt does not specify an output format flag')

    def _validate_xml(self, prompt: str, result: PromptValidationResult):
        if '<system>' not in prompt or '<user>' not in prompt:
            result.errors.append('XML prompt must include <system> and <user> elements')

        if not prompt.strip().startswith('<?xml'):
            result.warnings.append('XML prompt is missing the XML declaration header')

        if not is_balanced_xml(prompt):
            result.errors.append('XML prompt appears to have mismatched tags or invalid structure')

    @staticmethod
    def _rules_from_hints(validation_hints) -> Optional[Iterable[str]]:
        if validation_hints is None:
            return None
        if isinstance(validation_hints, dict):
            return validation_hints.get('rules')
        if isinstance(validation_hints, (list, tuple)):
            return validation_hints
        return getattr(validation_hints, 'rules', None)

    def _apply_validation_hints(self, result: PromptValidationResult, rules: Iterable[str], prompt: str):
        combined = ' '.join(str(rule) for rule in rules).lower()
        if 'system' in combined and not self._contains_system(prompt, result.format):
            result.warnings.append('Prompt may not explicitly include a system section as required by manifest rules')

    @staticmethod
    def _contains_system(prompt: str, format_name: str) -> bool:
        if format_name == PromptFormat.JSON.value:
            parsed = _load_json_object(prompt)
            return parsed is not None and _non_empty_string(parsed.get('system'))
        if format_name == PromptFormat.MARKDOWN.value:
            return bool(MARKDOWN_SYSTEM.search(prompt))
        if format_name == PromptFormat.PLAINTEXT.value:
            return 'SYSTEM:' in prompt
        if format_name == PromptFormat.CLI.value:
            return bool(CLI_SYSTEM.search(prompt))
        if format_name == PromptFormat.XML.value:
            return '<system>' in prompt
        return 'system' in prompt.lower()


# Convenience functions
def validate_prompt(prompt_format, prompt: str, validation_hints=None) -> PromptValidationResult:
    """Convenience function to validate a prompt."""
    return PromptValidator().validate(prompt_format, prompt, validation_hints)
