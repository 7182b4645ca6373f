"""
Conversation store lookups.

The CLI keeps one ``<session-id>.jsonl`` file per conversation under
``<account>/projects/<project-dir>/``. The conversation to resume after a
switch is the one whose last entry carries the latest timestamp. File
modification times are not used: syncing copies files between accounts and
rewrites them.
"""

import json
import logging
import os
import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

PROJECTS_DIR = "projects"
RESUME_FLAGS = ("--resume", "-r")


def project_dir_names(cwd: str) -> list[str]:
    """Candidate project directory names for a working directory, most likely first."""
    names = [cwd.replace("/", "-")]
    sanitized = re.sub(r"[^A-Za-z0-9]", "-", cwd)
    if sanitized not in names:
        names.append(sanitized)
    return names


def project_dir(account_root: Path, cwd: str) -> Path | None:
    for name in project_dir_names(cwd):
        candidate = account_root / PROJECTS_DIR / name
        if candidate.is_dir():
            return candidate
    return None


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # history-style epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def last_timestamp(lines: Sequence[str]) -> datetime | None:
    """Timestamp of the last entry that has one, skipping malformed lines."""
    for line in reversed(lines):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        stamp = _parse_timestamp(entry.get("timestamp"))
        if stamp is not None:
            return stamp
    return None


def conversation_files(directory: Path) -> Iterable[Path]:
    try:
        return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".jsonl")
    except OSError:
        return []


def resolve_latest_conversation_id(account_root: Path, cwd: str | None = None) -> str | None:
    """
    Identify the conversation most recently active in the working directory.

    Returns:
        The conversation id, or None when the account has no conversations
        for this directory.
    """
    cwd = cwd or os.getcwd()
    directory = project_dir(account_root, cwd)
    if directory is None:
        return None

    latest: tuple[datetime, str] | None = None
    for path in conversation_files(directory):
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as exc:
            logger.debug("Skipping unreadable conversation %s: %s", path, exc)
            continue
        stamp = last_timestamp(lines)
        if stamp is None:
            continue
        if latest is None or stamp > latest[0]:
            latest = (stamp, path.stem)

    if latest is None:
        return None
    logger.debug("Latest conversation in %s is %s (%s)", directory, latest[1], latest[0].isoformat())
    return latest[1]


def strip_resume_arguments(args: Sequence[str]) -> list[str]:
    """Remove ``--resume X``, ``--resume=X`` and ``-r X`` from an argument list."""
    result: list[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg in RESUME_FLAGS:
            skip_next = True
            continue
        if arg.startswith("--resume="):
            continue
        result.append(arg)
    return result


def with_resume_argument(args: Sequence[str], conversation_id: str | None) -> list[str]:
    """Arguments that resume conversation_id, replacing any earlier resume request."""
    if not conversation_id:
        return list(args)
    return ["--resume", conversation_id, *strip_resume_arguments(args)]
