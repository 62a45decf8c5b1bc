import pytest

from config.settings import DEFAULT_CONFIG, PipelineSettings, load_settings
from indexer.store import InMemoryStore, SQLiteStore
from pipelines.errors import ConfigurationError


def write_config(tmp_path, text):
    path = tmp_path / 'pipeline.yaml'
    path.write_text(text, encoding='utf-8')
    return str(path)


def test_defaults_without_a_settings_file(tmp_path):
    settings = PipelineSettings(str(tmp_path / 'missing.yaml'), environ={})

    assert settings.get('crawler.max_depth') == DEFAULT_CONFIG['crawler']['max_depth']
    assert settings.get('chunker.overlap_tokens') == 100
    assert settings.get('crawler.nope', 'fallback') == 'fallback'
    assert settings.get('crawler.max_depth.deeper') is None


def test_yaml_file_is_deep_merged(tmp_path):
    path = write_config(tmp_path, "crawler:\n  max_depth: 1\nstorage:\n  backend: memory\n")
    settings = PipelineSettings(path, environ={})

    assert settings.get('crawler.max_depth') == 1
    assert settings.get('crawler.max_pages') == 150
    assert settings.get('storage.backend') == 'memory'
    assert settings.get('storage.db_path') == 'docmanifest.db'


def test_overrides_win_over_file(tmp_path):
    path = write_config(tmp_path, "crawler:\n  max_depth: 1\n")
    settings = PipelineSettings(path, overrides={'crawler': {'max_depth': 2}}, environ={})
    assert settings.get('crawler.max_depth') == 2


@pytest.mark.parametrize('text', ['- a list\n- of items\n', 'crawler: [unclosed\n'])
def test_bad_settings_file_raises(tmp_path, text):
    with pytest.raises(ConfigurationError):
        PipelineSettings(write_config(tmp_path, text), environ={})


def test_environment_overrides(tmp_path):
    settings = PipelineSettings(str(tmp_path / 'missing.yaml'), environ={
        'OPENROUTER_API_KEY': 'or-secret',
        'DOCMANIFEST_DB_PATH': '/tmp/other.db',
        'OPENAI_API_KEY': '',
    })

    assert settings.get('secrets.openrouter_api_key') == 'or-secret'
    assert settings.get('storage.db_path') == '/tmp/other.db'
    assert settings.get('secrets.openai_api_key') is None


def test_config_path_from_environment(tmp_path):
    path = write_config(tmp_path, "renderer:\n  max_files: 2\n")
    settings = PipelineSettings(environ={'DOCMANIFEST_CONFIG': path})

    assert settings.config_path == path
    assert settings.renderer().max_files == 2


def test_to_dict_redacts_secrets(tmp_path):
    settings = PipelineSettings(str(tmp_path / 'missing.yaml'), environ={'OPENAI_API_KEY': 'sk-1'})

    redacted = settings.to_dict()
    assert redacted['secrets']['openai_api_key'] == '***'
    assert redacted['secrets']['openrouter_api_key'] is None
    assert settings.to_dict(redact_secrets=False)['secrets']['openai_api_key'] == 'sk-1'


class TestBuilders:
    """Components built from settings"""

    @pytest.fixture
    def settings(self, tmp_path):
        return PipelineSettings(str(tmp_path / 'missing.yaml'), environ={})

    def test_crawler_config_overrides(self, settings):
        config = settings.crawler_config(max_pages=5, allowed_patterns=['^https://docs'])
        assert config.max_pages == 5
        assert config.max_depth == 3
        assert config.allowed_patterns == ['^https://docs']

    def test_chunker(self, settings):
        chunker = settings.chunker()
        assert (chunker.min_tokens, chunker.max_tokens, chunker.overlap_tokens) == (300, 1000, 100)

    def test_classifier_requires_openrouter_key(self, tmp_path, settings):
        assert settings.classifier() is None
        assert settings.detector().classifier is None

        keyed = PipelineSettings(str(tmp_path / 'missing.yaml'), environ={'OPENROUTER_API_KEY': 'k'})
        assert keyed.classifier() is not None
        assert keyed.detector().classifier is not None

    def test_embedding_service_without_keys_has_no_providers(self, settings):
        assert settings.embedding_service().providers == []

    def test_store_backends(self, tmp_path):
        sqlite_settings = PipelineSettings(str(tmp_path / 'missing.yaml'),
                                           overrides={'storage': {'db_path': str(tmp_path / 'a.db')}},
                                           environ={})
        assert isinstance(sqlite_settings.store(), SQLiteStore)

        memory = PipelineSettings(str(tmp_path / 'missing.yaml'),
                                  overrides={'storage': {'backend': 'memory'}}, environ={})
        assert isinstance(memory.store(), InMemoryStore)

        unknown = PipelineSettings(str(tmp_path / 'missing.yaml'),
                                   overrides={'storage': {'backend': 'postgres'}}, environ={})
        with pytest.raises(ConfigurationError, match='Unknown storage backend: postgres'):
            unknown.store()

    def test_sources_dir(self, tmp_path, settings):
        assert settings.sources_dir() is None
        custom = PipelineSettings(str(tmp_path / 'missing.yaml'),
                                  overrides={'sources': {'directory': str(tmp_path)}}, environ={})
        assert custom.sources_dir() == tmp_path


def test_load_settings_passes_overrides(tmp_path):
    settings = load_settings(str(tmp_path / 'missing.yaml'), crawler={'max_depth': 0})
    assert settings.get('crawler.max_depth') == 0
