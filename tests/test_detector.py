import pytest

from manifests.detector import (
    CliPatternScorer,
    CodeFenceScorer,
    FileExtensionScorer,
    FormatDetector,
    FormatScore,
    JsonSchemaScorer,
    KeywordScorer,
    MarkdownStructureScorer,
    aggregate_scores,
    detect_format,
)
from manifests.models import FormatDetectionResult, PromptFormat
from pipelines.errors import ClassificationError

CLI_DOCS = """Usage: windsurf [options]

Options:
  --model NAME     Model to use
  --verbose        Print more output
  -q               Quiet mode

Examples:
$ windsurf run --model gpt
$ windsurf login
"""

MARKDOWN_DOCS = """# Rules

## Project rules

- Keep rules short
- One rule per file
- Use **bold** for emphasis

1. Create the folder
2. Add a rule

See [the guide](https://example.com/guide).
"""


class FakeClassifier:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def classify(self, tool_id, text):
        self.calls.append((tool_id, text))
        if self.error:
            raise self.error
        return self.result


class TestDetectFormat:
    """Heuristic ensemble and classifier fallback"""

    @pytest.mark.asyncio
    async def test_empty_text_defaults_to_plaintext(self):
        result = await FormatDetector().detect_format('cursor', '')

        assert result.preferred_format == PromptFormat.PLAINTEXT
        assert result.confidence_score == 20
        assert result.detection_methods_used == ['default']
        assert result.fallback_formats == []

    @pytest.mark.asyncio
    async def test_json_fence_only(self):
        result = await FormatDetector().detect_format('cursor', '```json\n{"a": 1}\n```')

        assert result.preferred_format == PromptFormat.JSON
        assert 'json-code-fence' in result.detection_methods_used

    @pytest.mark.asyncio
    async def test_cli_documentation(self):
        result = await FormatDetector().detect_format('windsurf', CLI_DOCS)

        assert result.preferred_format == PromptFormat.CLI
        assert 'cli-man-page' in result.detection_methods_used
        assert 'cli-dollar-commands' in result.detection_methods_used
        assert result.confidence_score <= 100

    @pytest.mark.asyncio
    async def test_markdown_documentation(self):
        result = await FormatDetector().detect_format('cursor', MARKDOWN_DOCS)
        assert result.preferred_format == PromptFormat.MARKDOWN

    @pytest.mark.asyncio
    async def test_fallbacks_ordered_and_exclude_preferred(self):
        text = CLI_DOCS + '\n' + MARKDOWN_DOCS + '\nSee package.json and the json schema.'
        result = await FormatDetector().detect_format('t', text)

        fallback_formats = [item.format for item in result.fallback_formats]
        confidences = [item.confidence for item in result.fallback_formats]

        assert result.preferred_format not in fallback_formats
        assert len(fallback_formats) <= 3
        assert confidences == sorted(confidences, reverse=True)
        assert all(c <= result.confidence_score for c in confidences)

    @pytest.mark.asyncio
    async def test_classifier_consulted_below_confidence_floor(self):
        classified = FormatDetectionResult(preferred_format='xml', confidence_score=90,
                                           detection_methods_used=['llm-classification'])
        classifier = FakeClassifier(result=classified)

        result = await FormatDetector(classifier=classifier).detect_format('t', '```json\n{}\n```')

        assert result.preferred_format == PromptFormat.XML
        assert classifier.calls == [('t', '```json\n{}\n```')]

    @pytest.mark.asyncio
    async def test_less_confident_classifier_ignored(self):
        classified = FormatDetectionResult(preferred_format='xml', confidence_score=10)
        result = await FormatDetector(classifier=FakeClassifier(result=classified)).detect_format(
            't', '```json\n{}\n```')
        assert result.preferred_format == PromptFormat.JSON

    @pytest.mark.asyncio
    async def test_classifier_failure_keeps_heuristic_result(self):
        classifier = FakeClassifier(error=ClassificationError('No JSON found in classifier response'))
        result = await FormatDetector(classifier=classifier).detect_format('t', '```json\n{}\n```')
        assert result.preferred_format == PromptFormat.JSON

    @pytest.mark.asyncio
    async def test_classifier_not_consulted_when_confident_or_disabled(self):
        classifier = FakeClassifier(error=AssertionError('should not be called'))

        await FormatDetector(classifier=classifier).detect_format('t', CLI_DOCS * 3)
        await FormatDetector(classifier=classifier, enable_classifier_fallback=False).detect_format(
            't', '```json\n{}\n```')

        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_detect_format_convenience(self):
        result = await detect_format('t', '')
        assert result.detection_methods_used == ['default']


class TestScorers:
    """Individual scorer votes"""

    def test_file_extension(self):
        vote = FileExtensionScorer().score('Edit the README.md file')
        assert vote.format == PromptFormat.MARKDOWN
        assert vote.score == 40
        assert vote.methods == ['markdown-file-extension', 'readme-hint']

    def test_generic_code_fence_votes_plaintext(self):
        vote = CodeFenceScorer().score('```\nplain\n```')
        assert vote.format == PromptFormat.PLAINTEXT
        assert vote.score == 20
        assert vote.methods == ['generic-code-fence']

    def test_code_fence_share(self):
        vote = CodeFenceScorer().score('```xml\n<a/>\n```\n```\nx\n```')
        assert vote.format == PromptFormat.XML
        assert vote.score == 20

    def test_json_schema_capped(self):
        text = '{"$schema": "x", "type": "object", "properties": {}, "required": [], "items": {}} json schema'
        vote = JsonSchemaScorer().score(text * 5)
        assert vote.format == PromptFormat.JSON
        assert vote.score == 50

    def test_markdown_structure_capped(self):
        vote = MarkdownStructureScorer().score(MARKDOWN_DOCS * 20)
        assert vote.score == 60

    def test_cli_scorer_without_signals(self):
        assert CliPatternScorer().score('nothing to see').score == 0

    def test_keyword_scorer(self):
        vote = KeywordScorer().score('Open a terminal and run the cli from your shell')
        assert vote.format == PromptFormat.CLI
        assert vote.score == 18
        assert vote.methods == ['cli-keywords']

    def test_aggregate_sums_and_unions_methods(self):
        totals = aggregate_scores([
            FormatScore(PromptFormat.JSON, 10, ['a']),
            FormatScore(PromptFormat.CLI, 0, ['ignored']),
            FormatScore(PromptFormat.JSON, 5, ['a', 'b']),
        ])
        assert len(totals) == 1
        assert totals[0].score == 15
        assert totals[0].methods == ['a', 'b']
