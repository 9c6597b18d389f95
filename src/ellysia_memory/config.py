"""Memory subsystem configuration models and loader."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import chardet
import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from .exceptions import ConfigError
from .models import MemoryType


class StorageConfig(BaseModel):
    """Persistent store location."""

    sqlite_db_path: str = "./memory/fragments.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class LocalCacheConfig(BaseModel):
    """In-process cache bounds."""

    capacity_per_user: int = Field(default=30, ge=1)
    max_users: int = Field(default=1000, ge=1)


class DistributedCacheConfig(BaseModel):
    """Redis-backed shared cache."""

    enabled: bool = True
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "memory"
    capacity_per_user: int = Field(default=50, ge=1)
    active_ttl_seconds: float = Field(default=3600.0, gt=0)
    context_ttl_seconds: float = Field(default=1800.0, gt=0)
    important_ttl_seconds: float = Field(default=7 * 24 * 3600.0, gt=0)
    important_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    important_limit: int = Field(default=10, ge=0)
    timeout_ms: int = Field(
        default=50, ge=1, description="Per-call timeout before falling through"
    )


def _default_triggers() -> dict[MemoryType, list[str]]:
    return {
        MemoryType.FACT: [
            "我叫", "我是", "我今年", "我的名字", "我住在", "我来自",
            "我的家乡", "我在", "我学习", "我专业",
        ],
        MemoryType.PREFERENCE: [
            "我喜欢", "我爱", "我讨厌", "我不喜欢", "我爱好", "我擅长", "我习惯",
        ],
        MemoryType.IMPORTANT_EVENT: [
            "我昨天", "我上周", "我去年", "我前天", "我经历了", "我遇到了",
            "我发生了", "我考试", "我面试", "我毕业", "我旅行", "我生病",
            "我获奖", "我比赛",
        ],
        MemoryType.EMOTION_PATTERN: [
            "我经常", "我总是", "我每次", "我一般", "我一...就",
        ],
    }


def _default_keywords() -> dict[MemoryType, list[str]]:
    return {
        MemoryType.FACT: [
            "名字", "年龄", "家乡", "住址", "学校", "专业", "年级", "生日",
            "星座", "身高", "职业", "学生",
        ],
        MemoryType.PREFERENCE: [
            "喜欢", "讨厌", "爱", "不喜欢", "最爱", "习惯", "嗜好", "兴趣",
            "爱好", "擅长",
        ],
        MemoryType.IMPORTANT_EVENT: [
            "考试", "毕业", "生日", "旅行", "约会", "面试", "比赛", "获奖",
            "生病", "手术", "事故", "纪念日",
        ],
        MemoryType.EMOTION_PATTERN: [
            "开心时", "难过时", "生气时", "紧张时", "焦虑时", "压力大时",
            "放松时", "疲惫时", "兴奋时",
        ],
    }


def _default_max_lengths() -> dict[MemoryType, int]:
    return {
        MemoryType.FACT: 50,
        MemoryType.PREFERENCE: 50,
        MemoryType.IMPORTANT_EVENT: 100,
        MemoryType.EMOTION_PATTERN: 50,
    }


class ExtractionConfig(BaseModel):
    """Trigger phrase rule table and span limits."""

    triggers: dict[MemoryType, list[str]] = Field(default_factory=_default_triggers)
    keywords: dict[MemoryType, list[str]] = Field(default_factory=_default_keywords)
    max_lengths: dict[MemoryType, int] = Field(default_factory=_default_max_lengths)
    sentence_delimiters: str = "。，？！；.,?!;\n"
    gap_max_length: int = Field(default=20, ge=1)
    max_keywords: int = Field(default=10, ge=0)

    @model_validator(mode="after")
    def _fill_missing_types(self) -> "ExtractionConfig":
        defaults = _default_max_lengths()
        for memory_type in MemoryType:
            self.triggers.setdefault(memory_type, [])
            self.keywords.setdefault(memory_type, [])
            self.max_lengths.setdefault(memory_type, defaults[memory_type])
        return self


class ImportanceGateConfig(BaseModel):
    """When a conversation is worth extracting from at all."""

    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    min_text_length: int = Field(default=20, ge=0)
    neutral_labels: list[str] = Field(default_factory=lambda: ["NEUTRAL"])


def _default_base_importance() -> dict[MemoryType, float]:
    return {
        MemoryType.IMPORTANT_EVENT: 0.95,
        MemoryType.FACT: 0.75,
        MemoryType.PREFERENCE: 0.6,
        MemoryType.EMOTION_PATTERN: 0.5,
    }


class ScoringConfig(BaseModel):
    """Importance policy weights."""

    base_importance: dict[MemoryType, float] = Field(
        default_factory=_default_base_importance
    )
    fallback_importance: float = Field(default=0.5, ge=0.0, le=1.0)
    negative_labels: list[str] = Field(
        default_factory=lambda: ["SAD", "ANXIOUS", "ANGRY", "ANXIETY", "ANGER"]
    )
    positive_labels: list[str] = Field(default_factory=lambda: ["HAPPY", "EXCITED", "JOY"])
    negative_bonus: float = 0.1
    positive_bonus: float = 0.05
    confidence_weight: float = 0.1
    long_text_threshold: int = 30
    long_text_bonus: float = 0.05

    @model_validator(mode="after")
    def _fill_missing_types(self) -> "ScoringConfig":
        for memory_type, value in _default_base_importance().items():
            self.base_importance.setdefault(memory_type, value)
        return self


class CapacityConfig(BaseModel):
    """Per-user persisted fragment cap."""

    max_fragments_per_user: int = Field(default=100, ge=1)
    important_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    recent_days: int = Field(default=7, ge=0)


class RetrievalConfig(BaseModel):
    """Relevance scoring for contextual retrieval."""

    default_k: int = Field(default=5, ge=0)
    threshold: float = 0.2
    keyword_weight: float = 0.3
    overlap_cap: int = Field(default=3, ge=1)
    importance_weight: float = 0.5
    recency_bonus: float = 0.1
    recency_window_days: float = 7.0
    min_token_length: int = Field(default=2, ge=1)
    max_token_length: int = Field(default=5, ge=1)
    require_keyword_match: bool = True
    cache_results: bool = True
    # Query the store by keyword when the cached active set yields fewer than k hits
    search_store_on_shortfall: bool = True

    @model_validator(mode="after")
    def _validate_token_bounds(self) -> "RetrievalConfig":
        if self.min_token_length > self.max_token_length:
            raise ValueError(
                f"min_token_length ({self.min_token_length}) must not exceed "
                f"max_token_length ({self.max_token_length})"
            )
        return self


class FeedbackConfig(BaseModel):
    """Importance adjustment from response feedback."""

    deltas: dict[str, float] = Field(
        default_factory=lambda: {"positive": 0.5, "negative": -0.3, "neutral": 0.1}
    )
    step: float = 0.1


class MemoryConfig(BaseModel):
    """Top-level memory subsystem configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    local_cache: LocalCacheConfig = Field(default_factory=LocalCacheConfig)
    distributed_cache: DistributedCacheConfig = Field(
        default_factory=DistributedCacheConfig
    )
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    gate: ImportanceGateConfig = Field(default_factory=ImportanceGateConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)


# ------------------------------------------------------------------
# Loading
# ------------------------------------------------------------------

_ENV_PATTERN = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def load_text_file_with_guess_encoding(file_path: str | Path) -> str | None:
    """Read a text file, trying common encodings before asking chardet."""
    for encoding in ("utf-8", "utf-8-sig", "gbk", "gb2312", "cp936"):
        try:
            with open(file_path, "r", encoding=encoding) as file:
                return file.read()
        except UnicodeDecodeError:
            continue
    try:
        with open(file_path, "rb") as file:
            raw_data = file.read()
        detected = chardet.detect(raw_data)
        if detected["encoding"]:
            return raw_data.decode(detected["encoding"])
    except (OSError, UnicodeDecodeError, LookupError) as e:
        logger.error(f"Error detecting encoding for config file {file_path}: {e}")
    return None


def substitute_env(content: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` with environment values."""

    def replacer(match: re.Match[str]) -> str:
        value = os.getenv(match.group(1))
        if value is not None:
            return value
        if match.group(2) is not None:
            return match.group(2)
        return match.group(0)

    return _ENV_PATTERN.sub(replacer, content)


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    if not os.path.exists(config_path):
        raise ConfigError(f"Configuration file not found: {config_path}", str(config_path))

    content = load_text_file_with_guess_encoding(config_path)
    if content is None:
        raise ConfigError(f"Failed to read configuration file: {config_path}", str(config_path))

    try:
        data = yaml.safe_load(substitute_env(content))
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise ConfigError(f"Invalid YAML in {config_path}: {e}", str(config_path)) from e
    return data or {}


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err["loc"])
        if err["type"] == "missing":
            lines.append(f"  - '{location}': required field is missing")
        else:
            lines.append(f"  - '{location}': {err['msg']} (input: {err.get('input', 'N/A')})")
    return "\n".join(lines)


def load_config(
    config_path: str | Path | None = None, section: str | None = "memory"
) -> MemoryConfig:
    """Load ``MemoryConfig`` from YAML, or defaults when no path is given.

    Variables from a ``.env`` file are loaded first so they can be
    referenced from the YAML. When ``section`` is set and present at the
    top level, only that mapping is validated.
    """
    load_dotenv()
    if config_path is None:
        return MemoryConfig()

    data = read_yaml(config_path)
    if section and isinstance(data.get(section), dict):
        data = data[section]

    try:
        config = MemoryConfig.model_validate(data)
    except ValidationError as e:
        formatted = _format_validation_error(e)
        logger.critical(f"Memory configuration is invalid ({config_path}):\n{formatted}")
        raise ConfigError(f"Invalid memory configuration:\n{formatted}", str(config_path)) from e

    logger.info(f"Loaded memory configuration from {config_path}")
    return config
