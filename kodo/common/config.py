"""
Configuration Management for Kodo

Loads configuration from the project-local .kodo/config.json and
environment variables. A project .env file is honoured through python-dotenv.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .schemas.records import Confidence

# Default store layout (relative to the project root)
STORE_DIRNAME = ".kodo"
CONFIG_FILENAME = "config.json"
LEARNINGS_DIRNAME = "learnings"
CONTEXT_DIRNAME = "context"
SESSIONS_DIRNAME = "sessions"
INDEX_DIRNAME = "index"
LOGS_DIRNAME = "logs"

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

_SIMILARITY_CHOICES = ("token_overlap", "edit_distance")
_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


@dataclass
class LearningConfig:
    """Capture behaviour"""
    auto_reflect: bool = True
    confidence_threshold: str = "medium"  # minimum confidence eligible for auto-apply


@dataclass
class TriggerConfig:
    """Hook trigger thresholds"""
    message_threshold: int = 10
    interval_minutes: float = 30.0  # 0 disables the time gate
    auto_reflect: bool = True


@dataclass
class CuratorConfig:
    """Dedup tuning"""
    similarity: str = "token_overlap"  # token_overlap | edit_distance
    similarity_threshold: float = 0.85
    max_edit_length: int = 400


@dataclass
class RetrieverConfig:
    """Relevance index and context generator configuration"""
    limit: int = 10
    min_score: float = 0.05
    embedding_weight: float = 0.5
    recency_half_life_days: float = 30.0
    max_context_items: int = 8


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    enabled: bool = False
    model: str = DEFAULT_EMBEDDING_MODEL


@dataclass
class StoreConfig:
    """Advisory lock tuning"""
    lock_timeout: float = 0.05  # initial backoff in seconds
    lock_retries: int = 8


@dataclass
class KodoConfig:
    """Main Kodo configuration"""
    learning: LearningConfig = field(default_factory=LearningConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    curator: CuratorConfig = field(default_factory=CuratorConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    root: Path = field(default_factory=lambda: Path.cwd() / STORE_DIRNAME)

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_FILENAME

    @property
    def min_auto_confidence(self) -> Confidence:
        return Confidence(self.learning.confidence_threshold)


def resolve_store_root(start: Optional[Path] = None) -> Path:
    """
    Locate the .kodo directory for the current project.

    Resolution order:
    1. KODO_DIR environment variable
    2. Nearest .kodo directory walking up from ``start`` (default: cwd)
    3. ``start/.kodo`` (not yet initialized)
    """
    env_dir = os.getenv("KODO_DIR")
    if env_dir:
        return Path(env_dir).expanduser()

    start = (start or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if (candidate / STORE_DIRNAME).is_dir():
            return candidate / STORE_DIRNAME
    return start / STORE_DIRNAME


def _as_bool(value, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _as_number(value, key: str, cast=float, minimum: float = 0.0):
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}") from None
    if number < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {number}")
    return number


def _as_ratio(value, key: str) -> float:
    number = _as_number(value, key)
    if number > 1.0:
        raise ConfigError(f"{key} must be between 0 and 1, got {number}")
    return number


def _as_confidence(value, key: str) -> str:
    try:
        return Confidence(str(value).lower()).value
    except ValueError:
        raise ConfigError(
            f"{key} must be one of {[c.value for c in Confidence]}, got {value!r}"
        ) from None


def _as_similarity(value, key: str) -> str:
    if value not in _SIMILARITY_CHOICES:
        raise ConfigError(f"{key} must be one of {list(_SIMILARITY_CHOICES)}, got {value!r}")
    return value


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be an object")
    return section


def _parse_learning_config(data: dict) -> LearningConfig:
    """Parse learning section from config dict"""
    learning_data = _section(data, "learning")
    return LearningConfig(
        auto_reflect=_as_bool(learning_data.get("auto_reflect", True), "learning.auto_reflect"),
        confidence_threshold=_as_confidence(
            learning_data.get("confidence_threshold", "medium"), "learning.confidence_threshold"
        ),
    )


def _parse_trigger_config(data: dict) -> TriggerConfig:
    """Parse trigger section from config dict"""
    trigger_data = _section(data, "trigger")
    return TriggerConfig(
        message_threshold=_as_number(
            trigger_data.get("message_threshold", 10), "trigger.message_threshold", int, 1
        ),
        interval_minutes=_as_number(
            trigger_data.get("interval_minutes", 30.0), "trigger.interval_minutes"
        ),
    )


def _parse_curator_config(data: dict) -> CuratorConfig:
    """Parse curator section from config dict"""
    curator_data = _section(data, "curator")
    return CuratorConfig(
        similarity=_as_similarity(curator_data.get("similarity", "token_overlap"), "curator.similarity"),
        similarity_threshold=_as_ratio(
            curator_data.get("similarity_threshold", 0.85), "curator.similarity_threshold"
        ),
        max_edit_length=_as_number(
            curator_data.get("max_edit_length", 400), "curator.max_edit_length", int, 1
        ),
    )


def _parse_retriever_config(data: dict) -> RetrieverConfig:
    """Parse retriever section from config dict"""
    retriever_data = _section(data, "retriever")
    return RetrieverConfig(
        limit=_as_number(retriever_data.get("limit", 10), "retriever.limit", int, 1),
        min_score=_as_ratio(retriever_data.get("min_score", 0.05), "retriever.min_score"),
        embedding_weight=_as_ratio(
            retriever_data.get("embedding_weight", 0.5), "retriever.embedding_weight"
        ),
        recency_half_life_days=_as_number(
            retriever_data.get("recency_half_life_days", 30.0), "retriever.recency_half_life_days",
            float, 0.001,
        ),
        max_context_items=_as_number(
            retriever_data.get("max_context_items", 8), "retriever.max_context_items", int, 1
        ),
    )


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = _section(data, "embedding")
    return EmbeddingConfig(
        enabled=_as_bool(embedding_data.get("enabled", False), "embedding.enabled"),
        model=embedding_data.get("model", DEFAULT_EMBEDDING_MODEL),
    )


def _parse_store_config(data: dict) -> StoreConfig:
    """Parse store section from config dict"""
    store_data = _section(data, "store")
    return StoreConfig(
        lock_timeout=_as_number(store_data.get("lock_timeout", 0.05), "store.lock_timeout"),
        lock_retries=_as_number(store_data.get("lock_retries", 8), "store.lock_retries", int, 1),
    )


def load_config(root: Optional[Path] = None) -> KodoConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (a project .env is loaded first)
    2. Config file (.kodo/config.json)
    3. Default values

    Raises:
        ConfigError: if the file is not valid JSON or holds invalid values
    """
    root = Path(root) if root else resolve_store_root()
    load_dotenv(root.parent / ".env")

    config = KodoConfig(root=root)

    if config.config_path.exists():
        try:
            with open(config.config_path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load config file {config.config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config.config_path} must hold a JSON object")

        config.learning = _parse_learning_config(data)
        config.trigger = _parse_trigger_config(data)
        config.curator = _parse_curator_config(data)
        config.retriever = _parse_retriever_config(data)
        config.embedding = _parse_embedding_config(data)
        config.store = _parse_store_config(data)

    # Environment variable overrides
    if os.getenv("KODO_AUTO_REFLECT"):
        config.learning.auto_reflect = _as_bool(os.getenv("KODO_AUTO_REFLECT"), "KODO_AUTO_REFLECT")
    if os.getenv("KODO_CONFIDENCE_THRESHOLD"):
        config.learning.confidence_threshold = _as_confidence(
            os.getenv("KODO_CONFIDENCE_THRESHOLD"), "KODO_CONFIDENCE_THRESHOLD"
        )
    if os.getenv("KODO_MESSAGE_THRESHOLD"):
        config.trigger.message_threshold = _as_number(
            os.getenv("KODO_MESSAGE_THRESHOLD"), "KODO_MESSAGE_THRESHOLD", int, 1
        )
    if os.getenv("KODO_INTERVAL_MINUTES"):
        config.trigger.interval_minutes = _as_number(
            os.getenv("KODO_INTERVAL_MINUTES"), "KODO_INTERVAL_MINUTES"
        )
    if os.getenv("KODO_SIMILARITY"):
        config.curator.similarity = _as_similarity(os.getenv("KODO_SIMILARITY"), "KODO_SIMILARITY")
    if os.getenv("KODO_SIMILARITY_THRESHOLD"):
        config.curator.similarity_threshold = _as_ratio(
            os.getenv("KODO_SIMILARITY_THRESHOLD"), "KODO_SIMILARITY_THRESHOLD"
        )
    if os.getenv("KODO_EMBEDDING_WEIGHT"):
        config.retriever.embedding_weight = _as_ratio(
            os.getenv("KODO_EMBEDDING_WEIGHT"), "KODO_EMBEDDING_WEIGHT"
        )
    if os.getenv("KODO_EMBEDDINGS_ENABLED"):
        config.embedding.enabled = _as_bool(
            os.getenv("KODO_EMBEDDINGS_ENABLED"), "KODO_EMBEDDINGS_ENABLED"
        )
    if os.getenv("KODO_EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("KODO_EMBEDDING_MODEL")

    # The trigger controller receives the toggle explicitly
    config.trigger.auto_reflect = config.learning.auto_reflect

    return config


def save_config(config: KodoConfig) -> None:
    """Save configuration to the project settings file."""
    config.root.mkdir(parents=True, exist_ok=True)

    data = {
        "learning": {
            "auto_reflect": config.learning.auto_reflect,
            "confidence_threshold": config.learning.confidence_threshold,
        },
        "trigger": {
            "message_threshold": config.trigger.message_threshold,
            "interval_minutes": config.trigger.interval_minutes,
        },
        "curator": {
            "similarity": config.curator.similarity,
            "similarity_threshold": config.curator.similarity_threshold,
            "max_edit_length": config.curator.max_edit_length,
        },
        "retriever": {
            "limit": config.retriever.limit,
            "min_score": config.retriever.min_score,
            "embedding_weight": config.retriever.embedding_weight,
            "recency_half_life_days": config.retriever.recency_half_life_days,
            "max_context_items": config.retriever.max_context_items,
        },
        "embedding": {
            "enabled": config.embedding.enabled,
            "model": config.embedding.model,
        },
        "store": {
            "lock_timeout": config.store.lock_timeout,
            "lock_retries": config.store.lock_retries,
        },
    }

    with open(config.config_path, "w") as f:
        json.dump(data, f, indent=2)

    config.config_path.chmod(0o600)
