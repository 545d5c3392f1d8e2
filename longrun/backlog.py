"""
LONGRUN Human Backlog — The Inbox

Explicit human requests (bugs, features, ideas). Anything incomplete here
pre-empts the generated feature list.
"""

from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from longrun.errors import CorruptDataError, LongrunError, NotFoundError, StoreMissingError
from longrun.storage import read_json, utc_now, write_json

ItemType = Literal["bug", "feature", "idea"]
ItemPriority = Literal["critical", "high", "medium", "low"]
ItemStatus = Literal["backlog", "in_progress", "blocked", "done"]

PRIORITY_ORDER: tuple[str, ...] = ("critical", "high", "medium", "low")


class BacklogComment(BaseModel):
    author: Literal["agent", "human"]
    timestamp: datetime = Field(default_factory=utc_now)
    text: str


class BacklogItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: ItemType
    priority: ItemPriority
    status: ItemStatus = "backlog"
    description: str
    details: str = ""
    comments: list[BacklogComment] = Field(default_factory=list)
    added: datetime = Field(default_factory=utc_now)
    completed: bool = False
    completed_date: datetime | None = Field(default=None, alias="completedDate")
    github_issue: int | None = None
    vote_count: int = 0


_ITEMS = TypeAdapter(list[BacklogItem])


class BacklogSummary(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    blocked: int = 0
    backlog: int = 0
    by_priority: dict[str, dict[str, int]] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)


def pick_next(items: list[BacklogItem]) -> BacklogItem | None:
    """
    Four-pass cascade, first match wins:
      1. an in_progress item (resume interrupted work), file order
      2. a `backlog` item, scanning critical -> low
      3. any incomplete item, scanning critical -> low
      4. any incomplete item, file order
    """
    incomplete = [i for i in items if not i.completed]
    if not incomplete:
        return None

    for item in incomplete:
        if item.status == "in_progress":
            return item

    for priority in PRIORITY_ORDER:
        for item in incomplete:
            if item.priority == priority and item.status == "backlog":
                return item

    for priority in PRIORITY_ORDER:
        for item in incomplete:
            if item.priority == priority:
                return item

    return incomplete[0]


def _sort_key(item: BacklogItem) -> tuple:
    return (
        item.completed,
        item.status != "in_progress",
        -item.vote_count,
        PRIORITY_ORDER.index(item.priority),
    )


class HumanBacklog:
    """human_backlog.json: a bare JSON list of BacklogItem records."""

    def __init__(self, path: Path):
        self.path = path

    def _read_strict(self) -> list[BacklogItem]:
        try:
            data = read_json(self.path)
        except StoreMissingError:
            return []
        try:
            return _ITEMS.validate_python(data)
        except ValidationError as e:
            raise CorruptDataError(self.path, f"{e.error_count()} validation error(s)") from e

    def load(self) -> list[BacklogItem]:
        """All items. A corrupt file reads as empty, with a warning."""
        try:
            return self._read_strict()
        except CorruptDataError as e:
            logger.warning(f"[BACKLOG] {e.message}; treating backlog as empty")
            return []

    def _save(self, items: list[BacklogItem]) -> None:
        write_json(self.path, items)

    def _mutate_item(self, item_id: str) -> tuple[list[BacklogItem], BacklogItem]:
        items = self._read_strict()
        for item in items:
            if item.id == item_id:
                return items, item
        raise NotFoundError("Backlog item", item_id)

    # -- Queries ----------------------------------------------------------

    def get(self, item_id: str) -> BacklogItem | None:
        return next((i for i in self.load() if i.id == item_id), None)

    def get_by_issue(self, issue_number: int) -> BacklogItem | None:
        return next((i for i in self.load() if i.github_issue == issue_number), None)

    def by_status(self, status: str) -> list[BacklogItem]:
        return [i for i in self.load() if i.status == status]

    def by_priority(self, priority: str) -> list[BacklogItem]:
        return [i for i in self.load() if i.priority == priority]

    def next_item(self) -> BacklogItem | None:
        item = pick_next(self.load())
        if item is not None and item.status == "in_progress":
            logger.info(f"[BACKLOG] Resuming in-progress item {item.id}: {item.description}")
        return item

    def summary(self) -> BacklogSummary:
        items = self.load()
        by_priority = {p: {"total": 0, "completed": 0} for p in PRIORITY_ORDER}
        by_type = {"bug": 0, "feature": 0, "idea": 0}
        for item in items:
            by_priority[item.priority]["total"] += 1
            if item.completed:
                by_priority[item.priority]["completed"] += 1
            by_type[item.type] += 1

        return BacklogSummary(
            total=len(items),
            completed=sum(1 for i in items if i.completed),
            in_progress=sum(1 for i in items if i.status == "in_progress"),
            blocked=sum(1 for i in items if i.status == "blocked"),
            backlog=sum(1 for i in items if i.status == "backlog"),
            by_priority=by_priority,
            by_type=by_type,
        )

    # -- Mutations --------------------------------------------------------

    def add_item(
        self,
        type: ItemType,
        priority: ItemPriority,
        description: str,
        details: str = "",
        github_issue: int | None = None,
    ) -> BacklogItem:
        items = self._read_strict()
        taken = {i.id for i in items}
        stamp = int(time.time() * 1000)
        while str(stamp) in taken:
            stamp += 1

        item = BacklogItem(
            id=str(stamp),
            type=type,
            priority=priority,
            description=description,
            details=details,
            github_issue=github_issue,
        )
        items.append(item)
        self._save(items)
        logger.info(f"[BACKLOG] Added {type} {item.id} ({priority}): {description}")
        return item

    def add_comment(self, item_id: str, author: Literal["agent", "human"], text: str) -> BacklogItem:
        items, item = self._mutate_item(item_id)
        item.comments.append(BacklogComment(author=author, text=text))
        self._save(items)
        return item

    def update_status(self, item_id: str, status: ItemStatus) -> BacklogItem:
        if status not in ("backlog", "in_progress", "blocked", "done"):
            raise LongrunError(f"Unknown backlog status: {status}")
        items, item = self._mutate_item(item_id)
        item.status = status
        if status == "done":
            item.completed = True
            item.completed_date = utc_now()
        else:
            item.completed = False
            item.completed_date = None
        self._save(items)
        logger.info(f"[BACKLOG] {item_id} -> {status}")
        return item

    def mark_in_progress(self, item_id: str) -> BacklogItem:
        return self.update_status(item_id, "in_progress")

    def mark_complete(self, item_id: str) -> BacklogItem:
        return self.update_status(item_id, "done")

    def mark_blocked(self, item_id: str, reason: str) -> BacklogItem:
        """Block an item and record why as an agent comment."""
        items, item = self._mutate_item(item_id)
        item.status = "blocked"
        item.completed = False
        item.completed_date = None
        item.comments.append(BacklogComment(author="agent", text=f"Blocked: {reason}"))
        self._save(items)
        logger.info(f"[BACKLOG] {item_id} blocked: {reason}")
        return item

    def vote(self, item_id: str, delta: int = 1) -> BacklogItem:
        items, item = self._mutate_item(item_id)
        item.vote_count += delta
        self._save(items)
        return item

    def sort(self) -> list[BacklogItem]:
        """Reorder on disk: incomplete first, in-progress first, votes, then priority."""
        items = sorted(self._read_strict(), key=_sort_key)
        self._save(items)
        return items

    # -- Report -----------------------------------------------------------

    def export_report(self) -> str:
        items = self.load()
        summary = self.summary()

        lines = [
            "# Human Backlog",
            "",
            f"**Generated:** {utc_now().isoformat()}",
            "",
            "## Summary",
            "",
            "| Status | Count |",
            "|--------|-------|",
            f"| Total | {summary.total} |",
            f"| Completed | {summary.completed} |",
            f"| In Progress | {summary.in_progress} |",
            f"| Blocked | {summary.blocked} |",
            f"| Backlog | {summary.backlog} |",
            "",
            "## Priority Items",
            "",
        ]

        incomplete = [i for i in items if not i.completed]
        for priority in PRIORITY_ORDER:
            group = [i for i in incomplete if i.priority == priority]
            if not group:
                continue
            lines.append(f"### {priority.upper()}")
            lines.append("")
            for item in group:
                lines.append(f"- [{item.status}] ({item.type}) **{item.description}**")
                if item.details:
                    lines.append(f"  {item.details}")
                if item.github_issue:
                    lines.append(f"  [Issue #{item.github_issue}]")
            lines.append("")

        return "\n".join(lines)
