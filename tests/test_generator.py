import pytest

from indexer.store import InMemoryToolStore, ToolRecord
from manifests.builder import ManifestBuilder
from manifests.generator import PromptGenerator, format_preference_order
from manifests.models import FallbackFormat, FormatDetectionResult, PromptFormat, PromptRequest
from pipelines.chunker import Chunk
from pipelines.errors import PromptGenerationError


def make_manifest(preferred='json', fallbacks=('markdown', 'plaintext'), name='Cursor', **template_overrides):
    detection = FormatDetectionResult(
        preferred_format=preferred,
        confidence_score=70,
        fallback_formats=[FallbackFormat(format=fmt, confidence=30) for fmt in fallbacks],
    )
    manifest = ManifestBuilder().build_manifest(
        'cursor', name, detection, [Chunk(tool_id='cursor', text='x', source_url='https://docs.cursor.com/')])
    templates = dict(manifest.templates)
    templates.update({PromptFormat(key): value for key, value in template_overrides.items()})
    return manifest.model_copy(update={'templates': templates})


@pytest.fixture
def request_():
    return PromptRequest(tool_id='cursor', task='Add a lint rule', language='typescript',
                         constraints={'maxTokens': 500})


class TestPromptGenerator:
    """Render and validate loop over manifest formats"""

    def test_preferred_format_used_first(self, request_):
        result = PromptGenerator().generate_from_manifest(make_manifest(), request_)

        assert result.format == 'json'
        assert not result.used_fallback
        assert result.validation.is_valid
        assert [(a.format, a.success) for a in result.attempts] == [('json', True)]

    def test_empty_template_falls_back(self, request_):
        manifest = make_manifest(json='')
        result = PromptGenerator().generate_from_manifest(manifest, request_)

        assert result.format == 'markdown'
        assert result.used_fallback
        assert len(result.attempts) == 2
        failed = result.attempts[0]
        assert failed.format == 'json'
        assert not failed.success
        assert failed.error == 'Template for format "json" is unavailable'
        assert result.attempts[1].success

    def test_render_exception_recorded_and_skipped(self, request_):
        class ExplodingRenderer:
            def render(self, prompt_format, template, payload):
                if prompt_format == PromptFormat.JSON:
                    raise RuntimeError('renderer blew up')
                return 'SYSTEM:\na\nTASK:\nb\nLANGUAGE:\nc\nCONSTRAINTS:\nFILES:\n'

        manifest = make_manifest(fallbacks=('plaintext',))
        result = PromptGenerator(renderer=ExplodingRenderer()).generate_from_manifest(manifest, request_)

        assert result.format == 'plaintext'
        assert result.attempts[0].error == 'renderer blew up'

    def test_invalid_prompts_exhaust_all_formats(self, request_):
        class BlankRenderer:
            def render(self, prompt_format, template, payload):
                return ''

        manifest = make_manifest()
        with pytest.raises(PromptGenerationError) as excinfo:
            PromptGenerator(renderer=BlankRenderer()).generate_from_manifest(manifest, request_)

        attempts = excinfo.value.attempts
        assert [a.format for a in attempts] == [f.value for f in format_preference_order(manifest)]
        assert all(not a.success for a in attempts)
        assert attempts[0].validation.errors == ['Prompt output is empty']
        assert 'Failed to generate a valid prompt for tool cursor' in str(excinfo.value)

    def test_result_to_dict(self, request_):
        data = PromptGenerator().generate_from_manifest(make_manifest(), request_).to_dict()
        assert data['tool_name'] == 'Cursor'
        assert data['validation']['is_valid'] is True
        assert data['attempts'][0]['format'] == 'json'


class TestGenerateFromStore:
    """Loading manifests from the tool store"""

    @pytest.mark.asyncio
    async def test_generate(self, request_):
        store = InMemoryToolStore([ToolRecord('cursor', 'Cursor', make_manifest())])
        result = await PromptGenerator(store).generate(request_)
        assert result.tool_id == 'cursor'
        assert 'Cursor' in result.prompt

    @pytest.mark.asyncio
    async def test_record_name_fills_empty_manifest_name(self, request_):
        store = InMemoryToolStore([ToolRecord('cursor', 'Cursor IDE', make_manifest(name=''))])
        result = await PromptGenerator(store).generate(request_)
        assert result.tool_name == 'Cursor IDE'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('tools, message', [
        ([], 'Tool not found: cursor'),
        ([ToolRecord('cursor', 'Cursor')], 'Tool manifest is missing or has not been generated'),
    ])
    async def test_missing_tool_or_manifest(self, request_, tools, message):
        with pytest.raises(PromptGenerationError, match=message):
            await PromptGenerator(InMemoryToolStore(tools)).generate(request_)

    @pytest.mark.asyncio
    async def test_no_store(self, request_):
        with pytest.raises(PromptGenerationError, match='No tool store configured'):
            await PromptGenerator().generate(request_)


def test_preference_order_appends_remaining_templates():
    manifest = make_manifest(preferred='cli', fallbacks=('xml',))
    order = format_preference_order(manifest)

    assert order[:2] == [PromptFormat.CLI, PromptFormat.XML]
    assert set(order) == set(PromptFormat)
    assert len(order) == len(set(order))
