"""Pipeline configuration, read from environment variables."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from src.processing.types import TopicLabel

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s %r; defaulting to %d", name, raw, default)
        return default
    if value < 1:
        logger.warning("%s must be positive, got %d; defaulting to %d", name, value, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(0.0, float(raw))
    except ValueError:
        logger.warning("Invalid %s %r; defaulting to %s", name, raw, default)
        return default


@dataclass
class PipelineConfig:
    """Tunables for the thread pipeline and its collaborators."""

    summary_model: str = "claude-sonnet-4-6"
    fast_model: str = "claude-haiku-4-5-20251001"
    message_concurrency: int = 3
    label_batch_size: int = 15
    label_batch_delay: float = 0.1
    auto_draft: bool = False
    topics_path: Path | None = None
    chroma_dir: Path = field(default_factory=lambda: Path("data/chroma"))
    display_name: str = ""
    poll_interval: int = 60

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Build PipelineConfig from environment variables."""
        topics = os.environ.get("USER_TOPICS_PATH", "")
        return cls(
            summary_model=os.environ.get("SUMMARY_MODEL", cls.summary_model),
            fast_model=os.environ.get("FAST_MODEL", cls.fast_model),
            message_concurrency=_env_int("MESSAGE_CONCURRENCY", 3),
            label_batch_size=_env_int("LABEL_BATCH_SIZE", 15),
            label_batch_delay=_env_float("LABEL_BATCH_DELAY_SECONDS", 0.1),
            auto_draft=os.environ.get("AUTO_DRAFT_ENABLED", "false").lower() == "true",
            topics_path=Path(topics) if topics else None,
            chroma_dir=Path(os.environ.get("CHROMA_DIR", "data/chroma")),
            display_name=os.environ.get("USER_DISPLAY_NAME", ""),
            poll_interval=_env_int("POLL_INTERVAL_SECONDS", 60),
        )


def load_topics(path: str | Path | None) -> list[TopicLabel]:
    """Load the user's label taxonomy from a JSON list of {name, usecase}.

    A missing file or malformed entries yield an empty / partial taxonomy so
    the pipeline falls back to the built-in defaults instead of failing.
    """
    if path is None:
        return []
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("Topics file %s not found; using default taxonomy", path)
        return []
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read topics file %s: %s", path, exc)
        return []

    if not isinstance(raw, list):
        logger.warning("Topics file %s must contain a JSON list", path)
        return []

    topics: list[TopicLabel] = []
    for entry in raw:
        if isinstance(entry, dict) and isinstance(entry.get("name"), str) and entry["name"].strip():
            topics.append(
                TopicLabel(name=entry["name"].strip(), usecase=str(entry.get("usecase", "")))
            )
        else:
            logger.warning("Skipping malformed topic entry: %r", entry)
    return topics
