"""Prompt generation: render and validate formats in manifest preference order."""

import logging
from typing import List, Optional

from pipelines.errors import PromptGenerationError
from observability.logging import get_structured_logger
from observability.metrics import record_prompt_attempt
from .models import GenerationAttempt, IDEManifest, PromptFormat, PromptGenerationResult, PromptRequest, RenderPayload
from .renderer import TemplateRenderer
from .validator import PromptValidator

logger = logging.getLogger(__name__)


def format_preference_order(manifest: IDEManifest) -> List[PromptFormat]:
    """Preferred format, then fallbacks in manifest order, then remaining template keys."""
    ordered: List[PromptFormat] = []
    for candidate in [manifest.preferred_format, *manifest.fallback_formats, *manifest.templates.keys()]:
        if candidate not in ordered:
            ordered.append(candidate)
    return ordered


class PromptGenerator:
    """Generates a validated prompt from a tool's stored manifest."""

    def __init__(self,
                 tool_store=None,
                 renderer: Optional[TemplateRenderer] = None,
                 validator: Optional[PromptValidator] = None):
        self.tool_store = tool_store
        self.renderer = renderer or TemplateRenderer()
        self.validator = validator or PromptValidator()

    async def generate(self, request: PromptRequest) -> PromptGenerationResult:
        """Load the tool's manifest and generate a prompt for ``request``.

        Raises:
            PromptGenerationError: If the tool or its manifest is missing, or no format validates
        """
        if self.tool_store is None:
            raise PromptGenerationError('No tool store configured')

        record = await self.tool_store.get_tool(request.tool_id)
        if record is None:
            raise PromptGenerationError(f"Tool not found: {request.tool_id}")
        if record.manifest is None:
            raise PromptGenerationError('Tool manifest is missing or has not been generated')

        manifest = record.manifest
        if not manifest.name and record.name:
            manifest = manifest.model_copy(update={'name': record.name})

        return self.generate_from_manifest(manifest, request)

    def generate_from_manifest(self, manifest: IDEManifest, request: PromptRequest) -> PromptGenerationResult:
        """Try each format in preference order until one renders and validates."""
        log = get_structured_logger(__name__, tool_id=manifest.id)
        attempts: List[GenerationAttempt] = []

        payload = RenderPayload(
            tool_id=manifest.id,
            tool_name=manifest.name,
            task=request.task,
            language=request.language,
            files=request.files,
            constraints=request.constraints,
        )

        for prompt_format in format_preference_order(manifest):
            template = manifest.templates.get(prompt_format)

            if not template or not template.strip():
                message = f'Template for format "{prompt_format.value}" is unavailable'
                attempts.append(GenerationAttempt(format=prompt_format.value, success=False, error=message))
                record_prompt_attempt(prompt_format.value, False)
                log.warning('Template missing', format=prompt_format.value)
                continue

            try:
                prompt = self.renderer.render(prompt_format, template, payload)
                validation = self.validator.validate(prompt_format, prompt, manifest.validation)
            except Exception as e:
                attempts.append(GenerationAttempt(format=prompt_format.value, success=False, error=str(e)))
                record_prompt_attempt(prompt_format.value, False)
                log.error(f"Error generating prompt: {e}", format=prompt_format.value)
                continue

            attempts.append(GenerationAttempt(format=prompt_format.value, success=validation.is_valid,
                                              validation=validation))
            record_prompt_attempt(prompt_format.value, validation.is_valid)

            if validation.is_valid:
                used_fallback = prompt_format != manifest.preferred_format
                log.info('Generated prompt', format=prompt_format.value,
                         used_fallback=used_fallback, attempts=len(attempts))
                return PromptGenerationResult(
                    tool_id=manifest.id,
                    tool_name=manifest.name,
                    format=prompt_format.value,
                    prompt=prompt,
                    used_fallback=used_fallback,
                    validation=validation,
                    attempts=attempts,
                )

            log.warning('Validation failed for generated prompt', format=prompt_format.value,
                        errors=validation.errors)

        raise PromptGenerationError(f"Failed to generate a valid prompt for tool {manifest.id}", attempts)
