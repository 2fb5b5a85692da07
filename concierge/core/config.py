"""
Configuration management for the concierge pipeline.

Loads settings from YAML config file and provides typed access.
Secrets and deployment switches come from the environment.
"""
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional
import yaml

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of concierge package)."""
    return Path(__file__).resolve().parent.parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


@dataclass
class ConciergeConfig:
    """Configuration for the concierge matching and ranking pipeline."""

    # Model configuration
    intent_model: str = "gpt-4o-mini"
    ranking_model: str = "gpt-4o-mini"
    intent_temperature: float = 0
    ranking_temperature: float = 0.2
    intent_max_tokens: int = 500
    ranking_max_tokens: int = 1500

    # Intent parsing
    intent_base_timeout_s: float = 10.0
    intent_timeout_per_extra_message_s: float = 1.5
    intent_max_timeout_s: float = 20.0
    intent_history_free_messages: int = 3     # History entries covered by the base timeout
    intent_retry_jitter_min_s: float = 0.3
    intent_retry_jitter_max_s: float = 1.2
    intent_history_window: int = 6

    # AI ranking
    ai_ranking_enabled: bool = True
    ranking_timeout_s: float = 12.0
    ranking_max_retries: int = 1
    ranking_candidate_limit: int = 200
    ranking_max_description_length: int = 1000
    ranking_cache_ttl_hours: int = 36
    ranking_cache_backend: str = "database"   # "database" or "redis"

    # Matching
    min_results_before_relax: Optional[int] = None  # None = session result count
    description_search_chars: int = 400
    enable_term_expansion: bool = True
    enable_type_anchor: bool = True
    max_per_vendor: Optional[int] = None
    max_per_type: Optional[int] = None

    # Billing
    usage_event_type: str = "AI_RANKING_EXECUTED"

    # Storage
    database_url: str = "sqlite:///concierge.db"

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "ConciergeConfig":
        """Load configuration from YAML file, then apply environment overrides."""
        path = config_path or DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls()._apply_env()

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        models_config = data.get('models', {})
        intent_config = data.get('intent', {})
        ranking_config = data.get('ranking', {})
        matching_config = data.get('matching', {})
        billing_config = data.get('billing', {})
        database_config = data.get('database', {})

        config = cls(
            intent_model=models_config.get('intent_model', 'gpt-4o-mini'),
            ranking_model=models_config.get('ranking_model', 'gpt-4o-mini'),
            intent_temperature=models_config.get('intent_temperature', 0),
            ranking_temperature=models_config.get('ranking_temperature', 0.2),
            intent_max_tokens=models_config.get('intent_max_tokens', 500),
            ranking_max_tokens=models_config.get('ranking_max_tokens', 1500),
            intent_base_timeout_s=intent_config.get('base_timeout_s', 10.0),
            intent_timeout_per_extra_message_s=intent_config.get('timeout_per_extra_message_s', 1.5),
            intent_max_timeout_s=intent_config.get('max_timeout_s', 20.0),
            intent_history_free_messages=intent_config.get('history_free_messages', 3),
            intent_retry_jitter_min_s=intent_config.get('retry_jitter_min_s', 0.3),
            intent_retry_jitter_max_s=intent_config.get('retry_jitter_max_s', 1.2),
            intent_history_window=intent_config.get('history_window', 6),
            ai_ranking_enabled=ranking_config.get('ai_ranking_enabled', True),
            ranking_timeout_s=ranking_config.get('timeout_s', 12.0),
            ranking_max_retries=ranking_config.get('max_retries', 1),
            ranking_candidate_limit=ranking_config.get('candidate_limit', 200),
            ranking_max_description_length=ranking_config.get('max_description_length', 1000),
            ranking_cache_ttl_hours=ranking_config.get('cache_ttl_hours', 36),
            ranking_cache_backend=ranking_config.get('cache_backend', 'database'),
            min_results_before_relax=matching_config.get('min_results_before_relax'),
            description_search_chars=matching_config.get('description_search_chars', 400),
            enable_term_expansion=matching_config.get('enable_term_expansion', True),
            enable_type_anchor=matching_config.get('enable_type_anchor', True),
            max_per_vendor=matching_config.get('max_per_vendor'),
            max_per_type=matching_config.get('max_per_type'),
            usage_event_type=billing_config.get('usage_event_type', 'AI_RANKING_EXECUTED'),
            database_url=database_config.get('url', 'sqlite:///concierge.db'),
        )
        return config._apply_env()

    def _apply_env(self) -> "ConciergeConfig":
        """Environment variables win over YAML for models, flags and storage."""
        model = os.getenv("OPENAI_MODEL")
        if model:
            self.intent_model = model
            self.ranking_model = model
        self.ai_ranking_enabled = _env_flag("FEATURE_AI_RANKING", self.ai_ranking_enabled)
        self.database_url = os.getenv("DATABASE_URL") or self.database_url
        return self

    def intent_timeout_for(self, history_length: int) -> float:
        """Timeout for an intent call given the number of history messages."""
        extra = max(0, history_length - self.intent_history_free_messages)
        timeout = self.intent_base_timeout_s + extra * self.intent_timeout_per_extra_message_s
        return min(timeout, self.intent_max_timeout_s)


# Global config instance
_config: Optional[ConciergeConfig] = None


def get_config() -> ConciergeConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = ConciergeConfig.from_yaml()
    return _config


def set_config(config: ConciergeConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
