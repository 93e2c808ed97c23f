"""Runtime configuration helpers for the change feed follower."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Immutable container for follower configuration."""

    couchdb_url: str
    since: Optional[Union[int, str]] = None
    retry_enabled: bool = True
    retry_max_ms: int = 30000
    retry_step_ms: int = 2000
    views: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    feed_name: str = "changes"
    checkpoint_backend: str = "memory"
    resume_path: Path = Path("changes_resume_tokens.json")
    resume_fsync: bool = False
    checkpoint_interval: int = 50
    connect_timeout_seconds: float = 10.0
    prefetch_concurrency: int = 4
    write_jsonl: bool = False
    jsonl_path: Path = Path("changes.jsonl")
    metrics_port: int = 0


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_checkpoint_backend(value: Optional[str]) -> str:
    if value is None:
        return "memory"
    normalized = value.strip().lower()
    if normalized in {"memory", "file"}:
        return normalized
    return "memory"


def _parse_since(value: Optional[str]) -> Optional[Union[int, str]]:
    if value is None or not value.strip():
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    return value


def _parse_views(value: Optional[str]) -> Dict[str, Dict[str, Any]]:
    if not value or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValueError("CHANGES_VIEWS must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise ValueError("CHANGES_VIEWS must be a JSON object")
    views: Dict[str, Dict[str, Any]] = {}
    for name, options in parsed.items():
        if not isinstance(options, dict) or not options.get("path"):
            raise ValueError(f"view {name!r} in CHANGES_VIEWS needs a path")
        views[str(name)] = {
            "path": str(options["path"]),
            "query": dict(options.get("query") or {}),
        }
    return views


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    couchdb_url = os.getenv("COUCHDB_URL", "").strip().rstrip("/")

    return Settings(
        couchdb_url=couchdb_url,
        since=_parse_since(os.getenv("CHANGES_SINCE")),
        retry_enabled=_as_bool(os.getenv("CHANGES_RETRY_ENABLED"), True),
        retry_max_ms=int(os.getenv("CHANGES_RETRY_MAX_MS", "30000")),
        retry_step_ms=int(os.getenv("CHANGES_RETRY_STEP_MS", "2000")),
        views=_parse_views(os.getenv("CHANGES_VIEWS")),
        feed_name=os.getenv("CHANGES_FEED_NAME", "changes").strip() or "changes",
        checkpoint_backend=_coerce_checkpoint_backend(
            os.getenv("CHANGES_CHECKPOINT_BACKEND")
        ),
        resume_path=Path(
            os.getenv("CHANGES_RESUME_PATH", "changes_resume_tokens.json")
        ),
        resume_fsync=_as_bool(os.getenv("CHANGES_RESUME_FSYNC"), False),
        checkpoint_interval=int(os.getenv("CHANGES_CHECKPOINT_INTERVAL", "50")),
        connect_timeout_seconds=float(
            os.getenv("CHANGES_CONNECT_TIMEOUT_SECONDS", "10.0")
        ),
        prefetch_concurrency=int(os.getenv("CHANGES_PREFETCH_CONCURRENCY", "4")),
        write_jsonl=_as_bool(os.getenv("CHANGES_WRITE_JSONL"), False),
        jsonl_path=Path(os.getenv("CHANGES_JSONL_PATH", "changes.jsonl")),
        metrics_port=int(os.getenv("METRICS_PORT", "0")),
    )
