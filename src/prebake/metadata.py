"""Per-app metadata stored in the cache directory."""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from prebake.config import cache_dir


def metadata_path(app: str, cache_root: str | Path | None = None) -> Path:
    root = Path(cache_root) if cache_root is not None else cache_dir()
    return root / "metadata" / f"metadata-{app}.json"


def read_metadata(app: str, cache_root: str | Path | None = None) -> dict[str, Any]:
    path = metadata_path(app, cache_root)
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def write_metadata(
    app: str,
    metadata: Mapping[str, Any],
    cache_root: str | Path | None = None,
) -> bool:
    """Persist *metadata*; returns False when the stored copy is already identical."""
    path = metadata_path(app, cache_root)
    if read_metadata(app, cache_root) == dict(metadata):
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(dict(metadata), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return True
