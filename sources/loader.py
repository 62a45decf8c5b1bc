"""Tool source loader for DocManifest.

Loads and validates per-tool crawl sources from YAML files.
"""

import re
import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
from urllib.parse import urlparse
import logging

logger = logging.getLogger(__name__)

TOOL_ID_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]*$')


@dataclass
class ToolSource:
    """Documentation source for one tool."""
    tool_id: str
    name: str
    root_url: str
    seed_urls: List[str] = field(default_factory=list)
    version: Optional[str] = None
    max_depth: Optional[int] = None
    max_pages: Optional[int] = None
    rate_limit_ms: Optional[int] = None
    allowed_patterns: List[str] = field(default_factory=list)
    replace_existing: bool = False
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.tool_id or not TOOL_ID_PATTERN.match(self.tool_id):
            raise ValueError(f"Invalid tool id: {self.tool_id!r}")

        if not self.name:
            self.name = self.tool_id

        parsed = urlparse(self.root_url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"root_url must be an absolute http(s) URL: {self.root_url!r}")

        if not self.seed_urls:
            self.seed_urls = [self.root_url]

        if self.max_depth is not None and not 0 <= self.max_depth <= 10:
            raise ValueError("max_depth must be between 0 and 10")

        if self.max_pages is not None and self.max_pages < 1:
            raise ValueError("max_pages must be at least 1")

        if self.rate_limit_ms is not None and self.rate_limit_ms < 0:
            raise ValueError("rate_limit_ms must not be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ToolSource':
        """Create ToolSource from dictionary."""
        return cls(
            tool_id=data['tool_id'],
            name=data.get('name', ''),
            root_url=data['root_url'],
            seed_urls=list(data.get('seed_urls') or []),
            version=data.get('version'),
            max_depth=data.get('max_depth'),
            max_pages=data.get('max_pages'),
            rate_limit_ms=data.get('rate_limit_ms'),
            allowed_patterns=list(data.get('allowed_patterns') or []),
            replace_existing=data.get('replace_existing', False),
            enabled=data.get('enabled', True)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {
            'tool_id': self.tool_id,
            'name': self.name,
            'root_url': self.root_url,
            'seed_urls': self.seed_urls,
            'replace_existing': self.replace_existing,
            'enabled': self.enabled
        }

        if self.version:
            result['version'] = self.version
        if self.allowed_patterns:
            result['allowed_patterns'] = self.allowed_patterns
        for key in ('max_depth', 'max_pages', 'rate_limit_ms'):
            if getattr(self, key) is not None:
                result[key] = getattr(self, key)

        return result

    def crawler_overrides(self) -> Dict[str, Any]:
        """Crawler options this source sets, for merging over the global crawler settings."""
        overrides: Dict[str, Any] = {
            key: getattr(self, key)
            for key in ('max_depth', 'max_pages', 'rate_limit_ms')
            if getattr(self, key) is not None
        }
        if self.allowed_patterns:
            overrides['allowed_patterns'] = self.allowed_patterns
        return overrides


class SourceLoader:
    """Loads tool sources from YAML files."""

    def __init__(self, sources_dir: Optional[Path] = None):
        """Initialize source loader.

        Args:
            sources_dir: Directory containing source YAML files.
                        Defaults to the directory of this module.
        """
        if sources_dir is None:
            sources_dir = Path(__file__).parent

        self.sources_dir = Path(sources_dir)
        self._cache: Dict[str, ToolSource] = {}
        self._last_modified: Dict[str, float] = {}

    def load_source(self, tool_id: str) -> Optional[ToolSource]:
        """Load the source for a specific tool.

        Args:
            tool_id: Tool identifier (file name without .yaml extension)

        Returns:
            ToolSource if found and valid, None otherwise
        """
        yaml_file = self.sources_dir / f"{tool_id}.yaml"

        if not yaml_file.exists():
            logger.warning(f"Tool source not found: {yaml_file}")
            return None

        current_mtime = yaml_file.stat().st_mtime
        if (tool_id in self._cache and
                self._last_modified.get(tool_id, -1) >= current_mtime):
            return self._cache[tool_id]

        try:
            with open(yaml_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)

            if not isinstance(data, dict):
                logger.error(f"Empty or invalid YAML file: {yaml_file}")
                return None

            # File name is the tool id
            if data.get('tool_id', tool_id) != tool_id:
                logger.warning(f"Tool id mismatch in {yaml_file}: {data['tool_id']} != {tool_id}")
            data['tool_id'] = tool_id

            source = ToolSource.from_dict(data)

            self._cache[tool_id] = source
            self._last_modified[tool_id] = current_mtime

            logger.info(f"Loaded tool source: {tool_id}")
            return source

        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {yaml_file}: {e}")
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Invalid tool source in {yaml_file}: {e}")
            return None

    def load_all_sources(self) -> Dict[str, ToolSource]:
        """Load all tool sources from the sources directory."""
        sources = {}

        if not self.sources_dir.exists():
            logger.warning(f"Sources directory not found: {self.sources_dir}")
            return sources

        for yaml_file in sorted(self.sources_dir.glob("*.yaml")):
            source = self.load_source(yaml_file.stem)
            if source:
                sources[yaml_file.stem] = source

        logger.info(f"Loaded {len(sources)} tool sources")
        return sources

    def get_enabled_sources(self) -> Dict[str, ToolSource]:
        """Get all enabled tool sources."""
        return {tool_id: source for tool_id, source in self.load_all_sources().items() if source.enabled}

    def reload_cache(self):
        """Clear cache to force reload of all sources."""
        self._cache.clear()
        self._last_modified.clear()
        logger.info("Tool source cache cleared")


# Convenience functions
def load_source(tool_id: str, sources_dir: Optional[Path] = None) -> Optional[ToolSource]:
    """Convenience function to load one tool source."""
    return SourceLoader(sources_dir).load_source(tool_id)


def load_all_sources(sources_dir: Optional[Path] = None) -> Dict[str, ToolSource]:
    """Convenience function to load every tool source."""
    return SourceLoader(sources_dir).load_all_sources()
