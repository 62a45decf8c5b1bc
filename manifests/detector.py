"""Heuristic prompt-format detection.

Six independent scorers each vote for one format with a bounded number of
points. Votes for the same format are summed, the highest total wins, and the
other formats with points become ordered fallbacks. Low-confidence results
can be handed to a text classifier.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .models import FallbackFormat, FormatDetectionResult, PromptFormat
from observability.metrics import record_format_detection

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 100
MAX_FALLBACKS = 3


@dataclass
class FormatScore:
    """One scorer's vote."""
    format: PromptFormat
    score: float
    methods: List[str] = field(default_factory=list)


def _top(candidates: Sequence[FormatScore]) -> FormatScore:
    # max() keeps the first of equal scores, so candidate order breaks ties
    return max(candidates, key=lambda candidate: candidate.score)


class FormatScorer:
    """Base class for format scorers."""

    name = 'scorer'

    def score(self, text: str) -> FormatScore:
        raise NotImplementedError


class FileExtensionScorer(FormatScorer):
    """File names and extensions mentioned in the text."""

    name = 'file-extension'

    def score(self, text: str) -> FormatScore:
        lower = text.lower()
        methods = []
        points = {PromptFormat.JSON: 0, PromptFormat.MARKDOWN: 0, PromptFormat.XML: 0}

        if '.json' in lower or 'json file' in lower or 'package.json' in lower:
            points[PromptFormat.JSON] += 25
            methods.append('json-file-extension')

        if '.md' in lower or 'readme.md' in lower or 'markdown file' in lower:
            points[PromptFormat.MARKDOWN] += 25
            methods.append('markdown-file-extension')

        if '.xml' in lower or 'xml file' in lower or 'pom.xml' in lower:
            points[PromptFormat.XML] += 25
            methods.append('xml-file-extension')

        if 'readme' in lower or 'read-me' in lower:
            points[PromptFormat.MARKDOWN] += 15
            methods.append('readme-hint')

        top = _top([FormatScore(fmt, value) for fmt, value in points.items()])
        return FormatScore(top.format, top.score, methods)


class CodeFenceScorer(FormatScorer):
    """Share of fenced code blocks tagged json, markdown or xml."""

    name = 'code-fence'

    LANGUAGE_FENCES = [
        (PromptFormat.JSON, re.compile(r'```json', re.IGNORECASE), 'json-code-fence'),
        (PromptFormat.MARKDOWN, re.compile(r'```markdown', re.IGNORECASE), 'markdown-code-fence'),
        (PromptFormat.XML, re.compile(r'```xml', re.IGNORECASE), 'xml-code-fence'),
    ]

    def score(self, text: str) -> FormatScore:
        total_fences = text.count('```') / 2
        if total_fences == 0:
            return FormatScore(PromptFormat.PLAINTEXT, 0)

        methods = []
        candidates = []
        for prompt_format, pattern, method in self.LANGUAGE_FENCES:
            matches = len(pattern.findall(text))
            if matches:
                methods.append(method)
            candidates.append(FormatScore(prompt_format, (matches / total_fences) * 40 if matches else 0))

        plaintext_score = 0
        if not methods:
            plaintext_score = 20
            methods.append('generic-code-fence')
        candidates.append(FormatScore(PromptFormat.PLAINTEXT, plaintext_score))

        top = _top(candidates)
        return FormatScore(top.format, top.score, methods)


class JsonSchemaScorer(FormatScorer):
    """JSON-schema vocabulary and schema-shaped objects."""

    name = 'json-schema'

    SCHEMA_OBJECT = re.compile(r'\{[^}]*"(type|properties|required|additionalProperties)"[^}]*\}')
    SCHEMA_KEYWORDS = ['"type":', '"properties":', '"required":', '"items":', '"$schema"']

    def score(self, text: str) -> FormatScore:
        lower = text.lower()
        methods = []
        points = 0

        if '"schema"' in lower or 'json schema' in lower or 'jsonschema' in lower:
            points += 35
            methods.append('json-schema-keyword')

        objects = self.SCHEMA_OBJECT.findall(text)
        if objects:
            points += min(len(objects) * 10, 30)
            methods.append('json-schema-pattern')

        keyword_hits = [keyword for keyword in self.SCHEMA_KEYWORDS if keyword in lower]
        if keyword_hits:
            points += len(keyword_hits) * 5
            methods.append('json-schema-keywords')

        return FormatScore(PromptFormat.JSON, min(points, 50), methods)


class MarkdownStructureScorer(FormatScorer):
    """Density of headings, lists, links and emphasis."""

    name = 'markdown-structure'

    HEADINGS = re.compile(r'^#{1,6}\s', re.MULTILINE)
    BULLETS = re.compile(r'^[-*+]\s', re.MULTILINE)
    NUMBERED = re.compile(r'^\d+\.\s', re.MULTILINE)
    LINKS = re.compile(r'\[([^\]]+)\]\(([^)]+)\)')
    BOLD = re.compile(r'\*\*[^*]+\*\*')
    ITALIC = re.compile(r'\*[^*]+\*')

    def score(self, text: str) -> FormatScore:
        methods = []
        points = 0

        for pattern, weight, cap, method in (
            (self.HEADINGS, 3, 25, 'markdown-headings'),
            (self.BULLETS, 2, 20, 'markdown-bullets'),
            (self.NUMBERED, 2, 15, 'markdown-numbered-lists'),
            (self.LINKS, 2, 15, 'markdown-links'),
        ):
            count = len(pattern.findall(text))
            if count:
                points += min(count * weight, cap)
                methods.append(method)

        emphasis = len(self.BOLD.findall(text)) + len(self.ITALIC.findall(text))
        if emphasis:
            points += min(emphasis, 10)
            methods.append('markdown-formatting')

        return FormatScore(PromptFormat.MARKDOWN, min(points, 60), methods)


class CliPatternScorer(FormatScorer):
    """Shell prompts, flags, CLI vocabulary and man-page headers."""

    name = 'cli-pattern'

    DOLLAR_COMMAND = re.compile(r'\$\s*[a-z][a-z0-9_-]*\s*[a-z0-9_-]', re.IGNORECASE | re.MULTILINE)
    FLAG = re.compile(r'(--[a-z][a-z0-9_-]+|-[a-z])')
    KEYWORDS = ['command', 'flag', 'option', 'usage', 'syntax', 'arguments']
    MAN_PAGE_HEADERS = ['usage:', 'options:', 'examples:']

    def score(self, text: str) -> FormatScore:
        lower = text.lower()
        methods = []
        points = 0

        commands = len(self.DOLLAR_COMMAND.findall(text))
        if commands:
            points += min(commands * 8, 30)
            methods.append('cli-dollar-commands')

        flags = len(self.FLAG.findall(text))
        if flags:
            points += min(flags * 3, 25)
            methods.append('cli-flags')

        keyword_hits = [keyword for keyword in self.KEYWORDS if keyword in lower]
        if keyword_hits:
            points += len(keyword_hits) * 4
            methods.append('cli-keywords')

        if any(header in lower for header in self.MAN_PAGE_HEADERS):
            points += 15
            methods.append('cli-man-page')

        return FormatScore(PromptFormat.CLI, min(points, 60), methods)


class KeywordScorer(FormatScorer):
    """Explicit mentions of a format by name."""

    name = 'keyword'

    KEYWORDS = [
        (PromptFormat.JSON, ['json', 'json format', 'json object', 'json array'], 'json-keywords'),
        (PromptFormat.MARKDOWN, ['markdown', 'md format', 'markdown syntax'], 'markdown-keywords'),
        (PromptFormat.XML, ['xml', 'xml format', 'xml element', 'xml tag'], 'xml-keywords'),
        (PromptFormat.CLI, ['command line', 'cli', 'terminal', 'shell', 'bash'], 'cli-keywords'),
        (PromptFormat.PLAINTEXT, ['plain text', 'text format', 'text file'], 'plaintext-keywords'),
    ]

    def score(self, text: str) -> FormatScore:
        lower = text.lower()
        methods = []
        candidates = []

        for prompt_format, keywords, method in self.KEYWORDS:
            hits = [keyword for keyword in keywords if keyword in lower]
            if hits:
                candidates.append(FormatScore(prompt_format, len(hits) * 6))
                methods.append(method)

        if not candidates:
            return FormatScore(PromptFormat.PLAINTEXT, 0)

        top = _top(candidates)
        return FormatScore(top.format, min(top.score, 30), methods)


DEFAULT_SCORERS = (
    FileExtensionScorer,
    CodeFenceScorer,
    JsonSchemaScorer,
    MarkdownStructureScorer,
    CliPatternScorer,
    KeywordScorer,
)


def aggregate_scores(scores: Sequence[FormatScore]) -> List[FormatScore]:
    """Sum scores per format and union their methods, preserving first-seen order."""
    totals: Dict[PromptFormat, FormatScore] = {}

    for vote in scores:
        if vote.score <= 0:
            continue
        entry = totals.setdefault(vote.format, FormatScore(vote.format, 0))
        entry.score += vote.score
        for method in vote.methods:
            if method not in entry.methods:
                entry.methods.append(method)

    return list(totals.values())


def default_result() -> FormatDetectionResult:
    return FormatDetectionResult(
        preferred_format=PromptFormat.PLAINTEXT,
        confidence_score=20,
        detection_methods_used=['default'],
        fallback_formats=[],
    )


class FormatDetector:
    """Runs the scorer ensemble and, below the confidence floor, the classifier."""

    def __init__(self,
                 min_confidence: float = 60,
                 enable_classifier_fallback: bool = True,
                 classifier=None,
                 scorers: Optional[Sequence[FormatScorer]] = None):
        """Initialize detector.

        Args:
            min_confidence: Heuristic score below which the classifier is consulted
            enable_classifier_fallback: Whether to consult the classifier at all
            classifier: Object with ``async classify(tool_id, text)``
            scorers: Scorer instances; the six built-in scorers when omitted
        """
        self.min_confidence = min_confidence
        self.enable_classifier_fallback = enable_classifier_fallback
        self.classifier = classifier
        self.scorers = list(scorers) if scorers is not None else [scorer() for scorer in DEFAULT_SCORERS]

    def score(self, text: str) -> List[FormatScore]:
        """Aggregated heuristic scores, best first."""
        votes = [scorer.score(text or '') for scorer in self.scorers]
        ranked = sorted(aggregate_scores(votes), key=lambda vote: vote.score, reverse=True)
        return [vote for vote in ranked if vote.score > 0]

    async def detect_format(self, tool_id: str, text: str) -> FormatDetectionResult:
        """Detect the preferred prompt format for a tool from its documentation text."""
        ranked = self.score(text)
        if not ranked:
            logger.info(f"No format signals found for {tool_id}, defaulting to plaintext")
            record_format_detection(PromptFormat.PLAINTEXT.value, 'default')
            return default_result()

        top = ranked[0]
        result = FormatDetectionResult(
            preferred_format=top.format,
            confidence_score=min(top.score, MAX_CONFIDENCE),
            detection_methods_used=top.methods,
            fallback_formats=[
                FallbackFormat(format=vote.format, confidence=min(vote.score, MAX_CONFIDENCE))
                for vote in ranked[1:1 + MAX_FALLBACKS]
            ],
        )

        if top.score < self.min_confidence and self.enable_classifier_fallback and self.classifier:
            try:
                classified = await self.classifier.classify(tool_id, text)
                if classified.confidence_score > top.score:
                    logger.info(f"Classifier overrode heuristic format for {tool_id}: "
                                f"{classified.preferred_format.value} ({classified.confidence_score})")
                    record_format_detection(classified.preferred_format.value, 'classifier')
                    return classified
            except Exception as e:
                logger.warning(f"Format classification failed for {tool_id}, using heuristic result: {e}")

        logger.info(f"Detected format {result.preferred_format.value} for {tool_id} "
                    f"with confidence {result.confidence_score:.1f}")
        record_format_detection(result.preferred_format.value)
        return result


# Convenience functions
async def detect_format(tool_id: str, text: str, **options) -> FormatDetectionResult:
    """Convenience function to detect a format with a fresh detector."""
    return await FormatDetector(**options).detect_format(tool_id, text)
