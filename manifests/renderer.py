"""Fills manifest templates with a concrete prompt request, per format."""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .models import FileContext, PromptFormat, RenderPayload

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER_SYSTEM = ("You are a helpful assistant specialized in this IDE. "
                              "Provide clear, concise responses tailored to the user's needs.")
NOT_SPECIFIED = 'Not specified'
ELLIPSIS = '…'

FENCE_LANGUAGES = [
    (('.ts', '.tsx'), 'typescript'),
    (('.js', '.jsx'), 'javascript'),
    (('.py',), 'python'),
    (('.java',), 'java'),
    (('.cs',), 'csharp'),
    (('.go',), 'go'),
    (('.rb',), 'ruby'),
    (('.php',), 'php'),
    (('.rs',), 'rust'),
    (('.swift',), 'swift'),
    (('.kt', '.kts'), 'kotlin'),
    (('.json',), 'json'),
    (('.yml', '.yaml'), 'yaml'),
    (('.xml',), 'xml'),
]

ROOT_HEADING = re.compile(r'^#\s.*$', re.MULTILINE)


@dataclass
class NormalizedFile:
    path: str
    preview: Optional[str] = None
    truncated: bool = False


def detect_fence_language(path: str) -> Optional[str]:
    """Code-fence language for a file path, by extension."""
    lower = path.lower()
    for extensions, language in FENCE_LANGUAGES:
        if lower.endswith(extensions):
            return language
    return None


def stringify_constraint_value(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return str(value)
    try:
        return json.dumps(value, separators=(',', ':'))
    except (TypeError, ValueError):
        return str(value)


def format_constraints(constraints: Optional[Dict[str, Any]]) -> List[str]:
    """``key: value`` lines for each constraint, in insertion order."""
    if not constraints or not isinstance(constraints, dict):
        return []
    return [f"{key}: {stringify_constraint_value(value)}" for key, value in constraints.items()]


def escape_cli_value(value: Any) -> str:
    text = '' if value is None else str(value)
    return text.replace('\\', '\\\\').replace('"', '\\"').replace('\r\n', ' ').replace('\n', ' ')


def escape_xml(value: Any) -> str:
    text = '' if value is None else str(value)
    return (text.replace('&', '&amp;')
                .replace('<', '&lt;')
                .replace('>', '&gt;')
                .replace('"', '&quot;')
                .replace("'", '&apos;'))


def truncate_inline(value: str, limit: int) -> str:
    normalized = re.sub(r'\s+', ' ', value).strip()
    if len(normalized) <= limit:
        return normalized
    return f"{normalized[:limit - 1]}{ELLIPSIS}"


def indent_lines(text: str, indent: str) -> str:
    return '\n'.join(f"{indent}{line}" for line in text.split('\n'))


def collapse_blank_lines(text: str) -> str:
    return re.sub(r'\n{3,}', '\n\n', text)


class TemplateRenderer:
    """Renders a stored template for one prompt format.

    Rendering never raises on a malformed stored template; each format falls
    back to built-in defaults.
    """

    def __init__(self, max_files: int = 5, max_file_preview_length: int = 800):
        self.max_files = max_files
        self.max_file_preview_length = max_file_preview_length

    def render(self, prompt_format, template: str, payload: RenderPayload) -> str:
        """Render ``template`` for ``prompt_format`` with the request in ``payload``."""
        files = self.normalize_files(payload.files)
        constraints = format_constraints(payload.constraints)

        renderers = {
            PromptFormat.JSON: self._render_json,
            PromptFormat.MARKDOWN: self._render_markdown,
            PromptFormat.PLAINTEXT: self._render_plaintext,
            PromptFormat.CLI: self._render_cli,
            PromptFormat.XML: self._render_xml,
        }
        return renderers[PromptFormat(prompt_format)](template or '', payload, files, constraints)

    def normalize_files(self, files) -> List[NormalizedFile]:
        """Cap the file list and truncate previews."""
        normalized: List[NormalizedFile] = []

        for index, entry in enumerate(files or []):
            if len(normalized) >= self.max_files:
                break

            if isinstance(entry, str):
                normalized.append(NormalizedFile(path=entry))
                continue

            if isinstance(entry, dict):
                entry = FileContext(path=entry.get('path') or '', content=entry.get('content'))

            path = (entry.path or '').strip() or f"file-{index + 1}"
            preview = None
            truncated = False

            if isinstance(entry.content, str) and entry.content.strip():
                content = entry.content.strip()
                preview = content[:self.max_file_preview_length]
                truncated = len(content) > self.max_file_preview_length
                if truncated:
                    preview = f"{preview}{ELLIPSIS}"

            normalized.append(NormalizedFile(path=path, preview=preview, truncated=truncated))

        return normalized

    def personalize_system_message(self, base: str, payload: RenderPayload) -> str:
        name = payload.tool_name.strip() if payload.tool_name and payload.tool_name.strip() else 'the target IDE'
        message = re.sub(r'this IDE', lambda _: name, base, flags=re.IGNORECASE)
        if name.lower() not in message.lower():
            message = f"{message} Focus on {name}."

        message = message.strip()
        if payload.language:
            message += f" Prioritize examples in {payload.language}."
        if payload.constraints:
            message += ' Ensure you adhere to all provided constraints.'
        return message.strip()

    def _user_summary(self, payload: RenderPayload, files: List[NormalizedFile],
                      constraints: List[str], delimiter: str) -> str:
        elements = [f"Task: {payload.task}", f"Language: {payload.language or NOT_SPECIFIED}"]

        if constraints:
            elements.append(f"Constraints: {'; '.join(constraints)}")

        if files:
            summaries = [truncate_inline(self._file_summary(file), 160) for file in files]
            elements.append(f"Files: {' | '.join(summaries)}")

        return delimiter.join(elements)

    @staticmethod
    def _file_summary(file: NormalizedFile) -> str:
        return f"{file.path} -> {file.preview}" if file.preview else file.path

    def _render_json(self, template: str, payload: RenderPayload,
                     files: List[NormalizedFile], constraints: List[str]) -> str:
        try:
            template_object = json.loads(template)
        except ValueError:
            logger.debug(f"Stored JSON template for {payload.tool_id} is invalid, rendering from defaults")
            template_object = {}
        if not isinstance(template_object, dict):
            template_object = {}

        base_system = template_object.get('system')
        if not isinstance(base_system, str):
            base_system = DEFAULT_PLACEHOLDER_SYSTEM

        context: Dict[str, Any] = {}
        if isinstance(template_object.get('context'), dict):
            context.update(template_object['context'])

        context['language'] = payload.language
        if files:
            context['files'] = [
                {'path': file.path, 'snippet': file.preview, 'truncated': file.truncated}
                for file in files
            ]
        if constraints:
            context['constraints'] = constraints

        rendered = dict(template_object)
        rendered['system'] = self.personalize_system_message(base_system, payload)
        rendered['user'] = self._user_summary(payload, files, constraints, '\n')
        rendered['context'] = context
        return json.dumps(rendered, indent=2, ensure_ascii=False)

    def _render_markdown(self, template: str, payload: RenderPayload,
                         files: List[NormalizedFile], constraints: List[str]) -> str:
        heading = ROOT_HEADING.search(template)
        lines = [heading.group(0).strip() if heading else '# Prompt Template', '']

        lines += ['## System', '', self.personalize_system_message(DEFAULT_PLACEHOLDER_SYSTEM, payload), '']

        lines += [
            '### Task Overview',
            '',
            f"- **Goal:** {payload.task}",
            f"- **Primary Language:** {payload.language or NOT_SPECIFIED}",
            '',
        ]

        if constraints:
            lines += ['### Constraints', '']
            lines += [f"- {constraint}" for constraint in constraints]
            lines.append('')

        if files:
            lines += ['### File Context', '']
            for file in files:
                lines.append(f"- {file.path}")
                if file.preview:
                    lines += [
                        '',
                        f"  ```{detect_fence_language(file.path) or ''}",
                        indent_lines(file.preview, '  '),
                        '  ```',
                    ]
                lines.append('')

        lines += [
            '## User Guidance',
            '',
            'Provide a step-by-step solution addressing the task, '
            'ensuring the response is optimized for the target IDE.',
        ]
        return collapse_blank_lines('\n'.join(lines))

    def _render_plaintext(self, template: str, payload: RenderPayload,
                          files: List[NormalizedFile], constraints: List[str]) -> str:
        lines = ['SYSTEM:', self.personalize_system_message(DEFAULT_PLACEHOLDER_SYSTEM, payload), '']
        lines += ['TASK:', payload.task, '']
        lines += ['LANGUAGE:', payload.language or NOT_SPECIFIED, '']

        lines.append('CONSTRAINTS:')
        lines += [f"- {constraint}" for constraint in constraints] or ['- None specified']
        lines.append('')

        lines.append('FILES:')
        if files:
            for file in files:
                lines.append(f"- {file.path}")
                if file.preview:
                    lines.append(f"  {file.preview}")
        else:
            lines.append('- No files provided')
        lines.append('')

        lines += ['RESPONSE INSTRUCTIONS:',
                  'Provide a clear, IDE-ready answer tailored to the specified task and language.']
        return collapse_blank_lines('\n'.join(lines))

    def _render_cli(self, template: str, payload: RenderPayload,
                    files: List[NormalizedFile], constraints: List[str]) -> str:
        base_system = self._extract_cli_value(template, '--system') or DEFAULT_PLACEHOLDER_SYSTEM
        system = self.personalize_system_message(base_system, payload)

        parts = [
            f'--system "{escape_cli_value(system)}"',
            f'--user "{escape_cli_value(self._user_summary(payload, files, constraints, " | "))}"',
            f'--language "{escape_cli_value(payload.language or NOT_SPECIFIED)}"',
        ]

        if files:
            summaries = [truncate_inline(self._file_summary(file), 120) for file in files]
            parts.append(f'--files "{escape_cli_value(" || ".join(summaries))}"')

        if constraints:
            parts.append(f'--constraints "{escape_cli_value(" | ".join(constraints))}"')

        format_value = self._flag_word(template, '--format') or 'json'
        parts.append(f'--format {format_value}')

        return ' '.join(parts)

    def _render_xml(self, template: str, payload: RenderPayload,
                    files: List[NormalizedFile], constraints: List[str]) -> str:
        system = self.personalize_system_message(DEFAULT_PLACEHOLDER_SYSTEM, payload)

        lines = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<prompt>',
            '  <system>',
            f"    <summary>{escape_xml(system)}</summary>",
            f"    <language>{escape_xml(payload.language or NOT_SPECIFIED)}</language>",
            '    <ide>',
            f"      <name>{escape_xml(payload.tool_name)}</name>",
            f"      <identifier>{escape_xml(payload.tool_id)}</identifier>",
            '    </ide>',
            '  </system>',
            '  <user>',
            f"    <task>{escape_xml(payload.task)}</task>",
        ]

        if constraints:
            lines.append('    <constraints>')
            lines += [f"      <constraint>{escape_xml(constraint)}</constraint>" for constraint in constraints]
            lines.append('    </constraints>')

        if files:
            lines.append('    <files>')
            lines += [
                f'      <file path="{escape_xml(file.path)}">{escape_xml(file.preview) if file.preview else ""}</file>'
                for file in files
            ]
            lines.append('    </files>')

        lines += ['  </user>', '</prompt>']
        return '\n'.join(lines)

    @staticmethod
    def _extract_cli_value(template: str, flag: str) -> Optional[str]:
        match = re.search(rf'{re.escape(flag)}\s+"([^"]*)"', template)
        return match.group(1) if match else None

    @staticmethod
    def _flag_word(template: str, flag: str) -> Optional[str]:
        match = re.search(rf'{re.escape(flag)}\s+"?([A-Za-z0-9_-]+)', template)
        return match.group(1) if match else None


# Convenience functions
def render_template(prompt_format, template: str, payload: RenderPayload, **options) -> str:
    """Convenience function to render a template with a fresh renderer."""
    return TemplateRenderer(**options).render(prompt_format, template, payload)
