"""
Conversation and history sync across accounts.

Every account should be able to resume any conversation, so conversation
files are copied between all account directories and each account's prompt
history is replaced by the merged history of all of them. Running a sync
twice in a row changes nothing the second time.
"""

import json
import logging
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from claudehub.conversations import PROJECTS_DIR, conversation_files

logger = logging.getLogger(__name__)

HISTORY_FILE = "history.jsonl"


@dataclass(slots=True)
class SyncSummary:
    """Counts from one sync run."""

    copied: int = 0
    updated: int = 0
    skipped: int = 0
    history_entries: int = 0
    duplicates_removed: int = 0

    @property
    def changed(self) -> int:
        return self.copied + self.updated


def project_dirs(account_root: Path) -> list[Path]:
    projects = account_root / PROJECTS_DIR
    try:
        return sorted(p for p in projects.iterdir() if p.is_dir() and p.name.startswith("-"))
    except OSError:
        return []


def _sync_file(source: Path, target: Path) -> str:
    if not target.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        return "copied"
    # Second precision: sub-second mtimes are not kept consistently across filesystems.
    if int(source.stat().st_mtime) > int(target.stat().st_mtime):
        shutil.copy2(source, target)
        return "updated"
    return "skipped"


def sync_conversations(accounts: Mapping[str, Path], summary: SyncSummary | None = None) -> SyncSummary:
    """Copy every conversation file to every other account where it is missing or older."""
    summary = summary or SyncSummary()
    for source_name, source_root in accounts.items():
        for target_name, target_root in accounts.items():
            if source_name == target_name:
                continue
            for directory in project_dirs(source_root):
                for path in conversation_files(directory):
                    target = target_root / PROJECTS_DIR / directory.name / path.name
                    try:
                        result = _sync_file(path, target)
                    except OSError as exc:
                        logger.warning("Could not sync %s to %s: %s", path, target_name, exc)
                        continue
                    setattr(summary, result, getattr(summary, result) + 1)
                    if result != "skipped":
                        logger.debug("[%s] %s/%s -> %s", result, directory.name, path.name, target_name)
    return summary


def read_history(account_root: Path) -> list[dict[str, Any]]:
    """Parsed entries of an account's history file; malformed lines are skipped."""
    path = account_root / HISTORY_FILE
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return []

    entries = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed history entry: %s", line[:50])
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def _history_key(entry: Mapping[str, Any]) -> str:
    return f"{entry.get('sessionId')}:{entry.get('timestamp')}"


def _timestamp_sort_key(entry: Mapping[str, Any]) -> float:
    value = entry.get("timestamp")
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0.0


def merge_history(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Deduplicate by session id and timestamp, oldest first."""
    unique: dict[str, dict[str, Any]] = {}
    for entry in entries:
        unique.setdefault(_history_key(entry), entry)
    return sorted(unique.values(), key=_timestamp_sort_key)


def write_history(account_root: Path, entries: list[dict[str, Any]]) -> None:
    path = account_root / HISTORY_FILE
    content = "".join(json.dumps(entry, ensure_ascii=False) + "\n" for entry in entries)
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


def sync_history(accounts: Mapping[str, Path], summary: SyncSummary | None = None) -> SyncSummary:
    """Replace each account's history with the merged history of all accounts."""
    summary = summary or SyncSummary()
    collected: list[dict[str, Any]] = []
    for root in accounts.values():
        collected.extend(read_history(root))

    merged = merge_history(collected)
    summary.history_entries = len(merged)
    summary.duplicates_removed = len(collected) - len(merged)
    if not merged:
        return summary

    for name, root in accounts.items():
        if not root.is_dir():
            continue
        try:
            write_history(root, merged)
        except OSError as exc:
            logger.warning("Could not write history for %s: %s", name, exc)
    return summary


def sync_conversations_and_history(accounts: Mapping[str, Path]) -> SyncSummary:
    """Full sync of conversations and history across all accounts."""
    summary = SyncSummary()
    if len(accounts) < 2:
        return summary
    sync_conversations(accounts, summary)
    sync_history(accounts, summary)
    logger.info(
        "Sync complete: %d copied, %d updated, %d skipped, %d history entries",
        summary.copied,
        summary.updated,
        summary.skipped,
        summary.history_entries,
    )
    return summary


def list_conversations(accounts: Mapping[str, Path]) -> dict[str, dict[str, int]]:
    """Number of conversations per project directory, per account."""
    return {
        name: {directory.name: len(list(conversation_files(directory))) for directory in project_dirs(root)}
        for name, root in accounts.items()
    }
