"""Data model for format detection, manifests and prompt generation.

The persisted manifest is a pydantic model. Its ``validation`` block is a
union tagged by ``type`` (one variant per prompt format), so a stored
manifest is fully re-validated when it is loaded.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class PromptFormat(str, Enum):
    """Structural shape of a generated prompt."""
    JSON = "json"
    MARKDOWN = "markdown"
    PLAINTEXT = "plaintext"
    CLI = "cli"
    XML = "xml"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


class FallbackFormat(BaseModel):
    format: PromptFormat
    confidence: float = Field(ge=0, le=100)


class FormatDetectionResult(BaseModel):
    """Outcome of format detection for one tool."""
    preferred_format: PromptFormat
    confidence_score: float = Field(ge=0, le=100)
    detection_methods_used: List[str] = Field(default_factory=list)
    fallback_formats: List[FallbackFormat] = Field(default_factory=list)


class _ValidationBase(BaseModel):
    rules: List[str] = Field(default_factory=list)


class JsonValidation(_ValidationBase):
    type: Literal['json-schema'] = 'json-schema'


class MarkdownValidation(_ValidationBase):
    type: Literal['markdown-schema'] = 'markdown-schema'


class PlaintextValidation(_ValidationBase):
    type: Literal['plaintext-schema'] = 'plaintext-schema'


class CliValidation(_ValidationBase):
    type: Literal['cli-schema'] = 'cli-schema'


class XmlValidation(_ValidationBase):
    type: Literal['xml-schema'] = 'xml-schema'


ManifestValidation = Annotated[
    Union[JsonValidation, MarkdownValidation, PlaintextValidation, CliValidation, XmlValidation],
    Field(discriminator='type')
]

VALIDATION_MODELS = {
    PromptFormat.JSON: JsonValidation,
    PromptFormat.MARKDOWN: MarkdownValidation,
    PromptFormat.PLAINTEXT: PlaintextValidation,
    PromptFormat.CLI: CliValidation,
    PromptFormat.XML: XmlValidation,
}


def validation_for(prompt_format: PromptFormat, rules: List[str]):
    """Build the validation block variant for ``prompt_format``."""
    return VALIDATION_MODELS[PromptFormat(prompt_format)](rules=list(rules))


def format_of_validation(validation) -> PromptFormat:
    return PromptFormat(validation.type[:-len('-schema')])


class IDEManifest(BaseModel):
    """Per-tool manifest: preferred prompt format, fallbacks, rules and templates."""

    id: str = Field(min_length=1)
    name: str
    preferred_format: PromptFormat
    fallback_formats: List[PromptFormat] = Field(default_factory=list)
    validation: ManifestValidation
    templates: Dict[PromptFormat, str] = Field(default_factory=dict)
    doc_version: str = 'latest'
    doc_sources: List[str] = Field(default_factory=list)
    trusted: bool = True
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('doc_sources')
    @classmethod
    def _sorted_unique_sources(cls, value: List[str]) -> List[str]:
        return sorted({source for source in value if source})

    @field_validator('fallback_formats')
    @classmethod
    def _unique_fallbacks(cls, value: List[PromptFormat]) -> List[PromptFormat]:
        unique = []
        for item in value:
            if item not in unique:
                unique.append(item)
        return unique

    @model_validator(mode='after')
    def _check_consistency(self) -> 'IDEManifest':
        if format_of_validation(self.validation) != self.preferred_format:
            raise ValueError(
                f"validation type {self.validation.type!r} does not match "
                f"preferred format {self.preferred_format.value!r}"
            )
        if self.preferred_format in self.fallback_formats:
            raise ValueError("preferred format must not be listed as a fallback")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON-compatible storage shape."""
        return self.model_dump(mode='json')

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IDEManifest':
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'IDEManifest':
        return cls.model_validate_json(raw)


@dataclass
class FileContext:
    """A file offered to the prompt as context, either a bare path or path plus content."""
    path: str
    content: Optional[str] = None


@dataclass
class RenderPayload:
    tool_id: str
    tool_name: str
    task: str
    language: str
    files: List[Union[str, FileContext, Dict[str, Any]]] = field(default_factory=list)
    constraints: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PromptRequest:
    """Request to generate a prompt for one tool."""
    tool_id: str
    task: str
    language: str
    files: List[Union[str, FileContext, Dict[str, Any]]] = field(default_factory=list)
    constraints: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PromptValidationResult:
    format: str
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationAttempt:
    """One entry of the ordered trial log built while generating a prompt."""
    format: str
    success: bool
    error: Optional[str] = None
    validation: Optional[PromptValidationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PromptGenerationResult:
    tool_id: str
    tool_name: str
    format: str
    prompt: str
    used_fallback: bool
    validation: PromptValidationResult
    attempts: List[GenerationAttempt] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
