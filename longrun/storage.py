"""
LONGRUN Storage

Whole-file JSON persistence with atomic replace. A reader running between
a writer's steps (a human checking status mid-session) sees either the old
file or the new one, never half of each.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from longrun.errors import CorruptDataError, StoreMissingError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Records whose on-disk keys are camelCase (feature list, sessions, progress)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file in the target's directory, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_name = f.name
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    finally:
        if tmp_name:
            Path(tmp_name).unlink(missing_ok=True)


def dump_model(model: BaseModel) -> Any:
    """JSON-ready dict using on-disk aliases, unset optionals omitted."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def write_json(path: Path, data: Any) -> None:
    if isinstance(data, BaseModel):
        data = dump_model(data)
    elif isinstance(data, list):
        data = [dump_model(d) if isinstance(d, BaseModel) else d for d in data]
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def read_json(path: Path) -> Any:
    """
    Parse a JSON store.

    Raises:
        StoreMissingError: the file does not exist.
        CorruptDataError: the file exists but is not valid JSON.
    """
    if not path.exists():
        raise StoreMissingError(path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptDataError(path, str(e)) from e


def append_line(path: Path, line: str) -> None:
    """Append one line to an append-only log."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line.rstrip("\n") + "\n")


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read a JSONL log, skipping lines that do not parse."""
    if not path.exists():
        return []
    records = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning(f"[STORAGE] Skipping malformed line {lineno} in {path.name}")
    return records
