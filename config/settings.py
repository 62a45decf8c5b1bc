"""Pipeline settings loader.

Settings come from ``DEFAULT_CONFIG``, deep-merged with a YAML file and then
with environment overrides for secrets and deployment-specific values.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from indexer.embeddings import EmbeddingService, providers_from_keys
from indexer.store import InMemoryStore, SQLiteStore
from manifests.builder import ManifestBuilder
from manifests.classifier import LLMClassifier
from manifests.detector import FormatDetector
from manifests.renderer import TemplateRenderer
from observability.logging import setup_logging
from pipelines.chunker import DocumentChunker
from pipelines.crawler import CrawlerConfig
from pipelines.errors import ConfigurationError
from pipelines.retry import RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'DOCMANIFEST_CONFIG'

DEFAULT_CONFIG: Dict[str, Any] = {
    'crawler': {
        'max_depth': 3,
        'max_pages': 150,
        'rate_limit_ms': 750,
        'min_jitter_ms': 250,
        'respect_robots_txt': True,
        'robots_fail_open': True,
        'user_agent': 'DocManifest-Crawler/1.0',
        'timeout_ms': 15000,
        'retry_attempts': 3,
        'exponential_backoff': True,
        'retry_base_delay_ms': 1000,
        'max_content_length_bytes': 2 * 1024 * 1024,
        'min_content_chars': 100,
    },
    'chunker': {
        'min_tokens': 300,
        'max_tokens': 1000,
        'overlap_tokens': 100,
        'model': 'text-embedding-3-small',
    },
    'detector': {
        'min_confidence': 60,
        'enable_classifier_fallback': True,
        'sample_size': 50,
    },
    'manifest': {
        'include_all_formats': True,
        'validate_templates': True,
    },
    'renderer': {
        'max_files': 5,
        'max_file_preview_length': 800,
    },
    'embeddings': {
        'batch_size': 25,
        'max_retries': 3,
        'initial_retry_delay_ms': 750,
        'openrouter_model': 'openai/text-embedding-3-small',
        'openai_model': 'text-embedding-3-small',
    },
    'classifier': {
        'model': 'anthropic/claude-3-haiku',
        'temperature': 0.1,
        'timeout': 60,
    },
    'storage': {
        'backend': 'sqlite',
        'db_path': 'docmanifest.db',
    },
    'sources': {
        'directory': None,
    },
    'jobs': {
        'recrawl_concurrency': 2,
        'validate_concurrency': 5,
        'manifest_max_age_days': 90,
        'classifier_on_rebuild': False,
    },
    'logging': {
        'level': 'INFO',
        'json': False,
        'colors': True,
        'file': None,
    },
    'secrets': {
        'openrouter_api_key': None,
        'openai_api_key': None,
        'openrouter_app_url': None,
        'openrouter_app_name': None,
    },
}

# environment variable -> dotted settings key
ENV_OVERRIDES = {
    'OPENROUTER_API_KEY': 'secrets.openrouter_api_key',
    'OPENAI_API_KEY': 'secrets.openai_api_key',
    'OPENROUTER_APP_URL': 'secrets.openrouter_app_url',
    'OPENROUTER_APP_NAME': 'secrets.openrouter_app_name',
    'DOCMANIFEST_DB_PATH': 'storage.db_path',
    'DOCMANIFEST_LOG_LEVEL': 'logging.level',
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _set_dotted(config: Dict[str, Any], key: str, value: Any):
    *parents, leaf = key.split('.')
    node = config
    for part in parents:
        node = node.setdefault(part, {})
    node[leaf] = value


class PipelineSettings:
    """Settings for every pipeline stage, with builders for configured components."""
    def __init__(self, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None,
                 environ: Optional[Dict[str, str]] = None):
        self._environ = os.environ if environ is None else environ
        self.config_path = config_path or self._get_default_config_path()
        self._config = self._load_config(overrides or {})

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        possible_paths = [
            self._environ.get(CONFIG_ENV_VAR),
            os.path.join(os.getcwd(), 'config', 'pipeline.yaml'),
            os.path.join(Path(__file__).parent, 'pipeline.yaml'),
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                return path

        return os.path.join(Path(__file__).parent, 'pipeline.yaml')

    def _load_config(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        config = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to load settings from {self.config_path}: {e}") from e
            if not isinstance(file_config, dict):
                raise ConfigurationError(f"Settings file {self.config_path} must contain a mapping")
            config = _deep_merge(config, file_config)
        else:
            logger.info(f"Settings file not found at {self.config_path}, using defaults")

        config = _deep_merge(config, overrides)

        for env_var, key in ENV_OVERRIDES.items():
            value = self._environ.get(env_var)
            if value:
                _set_dotted(config, key, value)

        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        value = self._config
        for part in key.split('.'):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def section(self, name: str) -> Dict[str, Any]:
        return dict(self.get(name, {}) or {})

    def to_dict(self, redact_secrets: bool = True) -> Dict[str, Any]:
        data = copy.deepcopy(self._config)
        if redact_secrets:
            data['secrets'] = {key: ('***' if value else None) for key, value in data.get('secrets', {}).items()}
        return data

    def crawler_config(self, **overrides) -> CrawlerConfig:
        return CrawlerConfig.from_dict({**self.section('crawler'), **overrides})

    def chunker(self) -> DocumentChunker:
        options = self.section('chunker')
        return DocumentChunker(
            min_tokens=options['min_tokens'],
            max_tokens=options['max_tokens'],
            overlap_tokens=options['overlap_tokens'],
            model=options['model'],
        )

    def classifier(self, session=None):
        """LLM classifier, or None when no OpenRouter key is configured."""
        api_key = self.get('secrets.openrouter_api_key')
        if not api_key:
            return None
        options = self.section('classifier')
        return LLMClassifier(
            api_key,
            model=options['model'],
            temperature=options['temperature'],
            session=session,
            app_url=self.get('secrets.openrouter_app_url'),
            app_name=self.get('secrets.openrouter_app_name'),
            timeout=options['timeout'],
        )

    def detector(self, session=None, use_classifier: Optional[bool] = None):
        options = self.section('detector')
        enable_fallback = options['enable_classifier_fallback'] if use_classifier is None else use_classifier
        return FormatDetector(
            min_confidence=options['min_confidence'],
            enable_classifier_fallback=enable_fallback,
            classifier=self.classifier(session) if enable_fallback else None,
        )

    def manifest_builder(self):
        return ManifestBuilder(**self.section('manifest'))

    def renderer(self):
        return TemplateRenderer(**self.section('renderer'))

    def embedding_service(self, session=None):
        options = self.section('embeddings')
        providers = providers_from_keys(
            openrouter_api_key=self.get('secrets.openrouter_api_key'),
            openai_api_key=self.get('secrets.openai_api_key'),
            openrouter_model=options['openrouter_model'],
            openai_model=options['openai_model'],
            app_url=self.get('secrets.openrouter_app_url'),
            app_name=self.get('secrets.openrouter_app_name'),
            session=session,
        )
        retry_policy = RetryPolicy(
            max_attempts=options['max_retries'],
            base_delay=options['initial_retry_delay_ms'] / 1000,
            jitter_fraction=0.2,
        )
        return EmbeddingService(providers, batch_size=options['batch_size'], retry_policy=retry_policy)

    def store(self):
        """Chunk and tool store for the configured backend. SQLite stores need ``initialize()``."""
        backend = self.get('storage.backend', 'sqlite')
        if backend == 'sqlite':
            return SQLiteStore(self.get('storage.db_path'))
        if backend == 'memory':
            return InMemoryStore()
        raise ConfigurationError(f"Unknown storage backend: {backend}")

    def sources_dir(self) -> Optional[Path]:
        directory = self.get('sources.directory')
        return Path(directory) if directory else None

    def configure_logging(self):
        options = self.section('logging')
        setup_logging(
            level=str(options['level']),
            log_file=options.get('file'),
            use_json=bool(options.get('json')),
            use_colors=bool(options.get('colors', True)),
        )


def load_settings(config_path: Optional[str] = None, **overrides) -> PipelineSettings:
    """Convenience function to load settings."""
    return PipelineSettings(config_path, overrides=overrides or None)
