"""
Configuration management for search_accel.

Loads settings from YAML config file and provides typed access. Connection
settings (Redis, origin) can be overridden from the environment, which is
populated from a .env file when present.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of search_accel package)."""
    return Path(__file__).resolve().parent.parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"

HOUR = 3600
MINUTE = 60


def _default_content_ttls() -> Dict[str, int]:
    return {
        "locations": 12 * HOUR,
        "staff": 4 * HOUR,
        "programs": 2 * HOUR,
        "courses": 1 * HOUR,
        "tabs": 30 * MINUTE,
        "suggestions": 15 * MINUTE,
        "default": 15 * MINUTE,
        "news": 10 * MINUTE,
        "events": 5 * MINUTE,
    }


def _default_tab_type_ttls() -> Dict[str, int]:
    return {
        "default": 30 * MINUTE,
        "all": 20 * MINUTE,
        "programs": 2 * HOUR,
        "staff": 4 * HOUR,
        "news": 15 * MINUTE,
        "debug": 60,
    }


def _default_tab_rules() -> Dict[str, Any]:
    return {
        "version": 1,
        "partial_param": "form",
        "partial_value": "partial",
        "tab_params": ["tab", "Tab"],
        "profile_param": "profile",
        "default_profile": "_default",
        "facet_prefix": "f.Tabs|",
        "known_tabs": ["Results", "Programs", "Faculty_Staff", "News", "People", "Events"],
        "synonyms": {
            "FacultyStaff": "Faculty_Staff",
            "Faculty": "Faculty_Staff",
            "Staff": "Faculty_Staff",
        },
        "default_tab": "Results",
    }


@dataclass
class AccelConfig:
    """Configuration for the search acceleration layer."""

    # Redis connection
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_socket_timeout: float = 2.0
    skip_redis: bool = False

    # Origin search backend
    origin_base_url: str = "https://origin.example.edu/s"
    origin_search_path: str = "/search"
    origin_suggest_path: str = "/suggest"
    origin_timeout: float = 30.0
    default_collection: str = "seattleu~sp-search"
    default_profile: str = "_default"

    # Popularity-axis TTLs (seconds)
    search_default_ttl: int = 12 * HOUR
    popular_threshold: int = 5
    high_volume_threshold: int = 20
    popular_multiplier: float = 1.3
    high_volume_multiplier: float = 1.5
    popularity_max_entries: int = 10000

    # Tab and pre-render TTLs (seconds)
    tab_content_ttl: int = 14 * HOUR
    popular_tab_ttl: int = 20 * HOUR
    pre_render_ttl: int = 2 * HOUR
    popular_tabs: List[str] = field(
        default_factory=lambda: ["Results", "Programs", "Faculty_Staff", "News"]
    )

    # Content-class TTL tables (seconds)
    content_ttls: Dict[str, int] = field(default_factory=_default_content_ttls)
    tab_type_ttls: Dict[str, int] = field(default_factory=_default_tab_type_ttls)

    # Probe / prefetch behaviour
    probe_timeout: float = 1.0
    probe_min_query_length: int = 2
    prefetch_timeout: float = 5.0
    prefetch_min_query_length: int = 4
    prefetch_debounce_ms: int = 300
    suggestion_min_query_length: int = 3
    suggestion_debounce_ms: int = 200

    # Tab classification rules
    tab_rules: Dict[str, Any] = field(default_factory=_default_tab_rules)

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "AccelConfig":
        """Load configuration from YAML file, then apply environment overrides."""
        path = config_path or DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls().apply_env()

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        redis_config = data.get('redis', {})
        origin_config = data.get('origin', {})
        ttl_config = data.get('ttl', {})
        popularity_config = data.get('popularity', {})
        client_config = data.get('client', {})
        tabs_config = data.get('tabs', {})

        defaults = cls()
        content_ttls = dict(defaults.content_ttls)
        content_ttls.update(ttl_config.get('content', {}))
        tab_type_ttls = dict(defaults.tab_type_ttls)
        tab_type_ttls.update(ttl_config.get('tab_types', {}))
        tab_rules = dict(defaults.tab_rules)
        tab_rules.update(tabs_config.get('rules', {}))

        config = cls(
            redis_url=redis_config.get('url'),
            redis_host=redis_config.get('host', 'localhost'),
            redis_port=redis_config.get('port', 6379),
            redis_db=redis_config.get('db', 0),
            redis_socket_timeout=redis_config.get('socket_timeout', 2.0),
            origin_base_url=origin_config.get('base_url', defaults.origin_base_url),
            origin_search_path=origin_config.get('search_path', '/search'),
            origin_suggest_path=origin_config.get('suggest_path', '/suggest'),
            origin_timeout=origin_config.get('timeout', 30.0),
            default_collection=origin_config.get('default_collection', defaults.default_collection),
            default_profile=origin_config.get('default_profile', '_default'),
            search_default_ttl=ttl_config.get('search_default', defaults.search_default_ttl),
            tab_content_ttl=ttl_config.get('tab_content', defaults.tab_content_ttl),
            popular_tab_ttl=ttl_config.get('popular_tab', defaults.popular_tab_ttl),
            pre_render_ttl=ttl_config.get('pre_render', defaults.pre_render_ttl),
            content_ttls=content_ttls,
            tab_type_ttls=tab_type_ttls,
            popular_threshold=popularity_config.get('popular_threshold', 5),
            high_volume_threshold=popularity_config.get('high_volume_threshold', 20),
            popular_multiplier=popularity_config.get('popular_multiplier', 1.3),
            high_volume_multiplier=popularity_config.get('high_volume_multiplier', 1.5),
            popularity_max_entries=popularity_config.get('max_entries', 10000),
            probe_timeout=client_config.get('probe_timeout', 1.0),
            probe_min_query_length=client_config.get('probe_min_query_length', 2),
            prefetch_timeout=client_config.get('prefetch_timeout', 5.0),
            prefetch_min_query_length=client_config.get('prefetch_min_query_length', 4),
            prefetch_debounce_ms=client_config.get('prefetch_debounce_ms', 300),
            suggestion_min_query_length=client_config.get('suggestion_min_query_length', 3),
            suggestion_debounce_ms=client_config.get('suggestion_debounce_ms', 200),
            popular_tabs=tabs_config.get('popular', defaults.popular_tabs),
            tab_rules=tab_rules,
        )
        return config.apply_env()

    def apply_env(self) -> "AccelConfig":
        """Override connection settings from environment variables."""
        # Upstash (cloud-hosted) wins over a plain REDIS_URL
        self.redis_url = os.getenv("UPSTASH_REDIS_URL") or os.getenv("REDIS_URL") or self.redis_url
        self.redis_host = os.getenv("REDIS_HOST", self.redis_host)
        self.redis_port = int(os.getenv("REDIS_PORT", str(self.redis_port)))
        self.redis_db = int(os.getenv("REDIS_DB", str(self.redis_db)))
        self.origin_base_url = os.getenv("ORIGIN_BASE_URL", self.origin_base_url)
        if os.getenv("ACCEL_SKIP_REDIS", "0") == "1":
            self.skip_redis = True
        return self


# Global config instance
_config: Optional[AccelConfig] = None


def get_config() -> AccelConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AccelConfig.from_yaml()
    return _config


def set_config(config: AccelConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
