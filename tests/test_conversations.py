"""Tests for conversation lookup and resume arguments."""

import json
import os
import time

import pytest

from claudehub.conversations import (
    last_timestamp,
    project_dir_names,
    resolve_latest_conversation_id,
    strip_resume_arguments,
    with_resume_argument,
)

CWD = "/home/dev/work/my_app"


def write_conversation(directory, session_id, timestamps, mtime=None, trailing=()):
    lines = [json.dumps({"type": "user", "timestamp": ts, "sessionId": session_id}) for ts in timestamps]
    lines.extend(trailing)
    path = directory / f"{session_id}.jsonl"
    path.write_text("\n".join(lines) + "\n")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def project(tmp_path):
    directory = tmp_path / "projects" / "-home-dev-work-my_app"
    directory.mkdir(parents=True)
    return directory


class TestProjectDirNames:
    """Tests for project directory naming."""

    def test_slashes_replaced(self):
        assert project_dir_names("/home/dev/app") == ["-home-dev-app"]

    def test_sanitized_fallback(self):
        """Test other punctuation gets a second, fully sanitized candidate."""
        assert project_dir_names("/home/dev/my.app_v2") == ["-home-dev-my.app_v2", "-home-dev-my-app-v2"]


class TestResolveLatestConversation:
    """Tests for resolve_latest_conversation_id."""

    def test_latest_internal_timestamp_wins_over_mtime(self, tmp_path, project):
        """Test the file with the newest message wins even when its mtime is older."""
        now = time.time()
        write_conversation(project, "older-msg", ["2026-01-15T10:00:00.000Z"], mtime=now)
        write_conversation(project, "newer-msg", ["2026-01-15T09:00:00.000Z", "2026-01-15T11:30:00.000Z"], mtime=now - 3600)

        assert resolve_latest_conversation_id(tmp_path, CWD) == "newer-msg"

    def test_skips_trailing_malformed_lines(self, tmp_path, project):
        write_conversation(project, "one", ["2026-01-15T10:00:00Z"], trailing=["{broken", '{"type": "summary"}'])
        write_conversation(project, "two", ["2026-01-15T09:00:00Z"])

        assert resolve_latest_conversation_id(tmp_path, CWD) == "one"

    def test_files_without_timestamps_ignored(self, tmp_path, project):
        (project / "empty.jsonl").write_text('{"type": "summary"}\n')

        assert resolve_latest_conversation_id(tmp_path, CWD) is None

    def test_missing_project_dir(self, tmp_path):
        assert resolve_latest_conversation_id(tmp_path, CWD) is None

    def test_sanitized_directory_used(self, tmp_path):
        """Test the sanitized project directory is found when the plain one is absent."""
        directory = tmp_path / "projects" / "-home-dev-work-my-app"
        directory.mkdir(parents=True)
        write_conversation(directory, "abc", ["2026-01-15T10:00:00Z"])

        assert resolve_latest_conversation_id(tmp_path, CWD) == "abc"

    def test_non_jsonl_files_ignored(self, tmp_path, project):
        write_conversation(project, "real", ["2026-01-15T10:00:00Z"])
        (project / "notes.txt").write_text(json.dumps({"timestamp": "2030-01-01T00:00:00Z"}))

        assert resolve_latest_conversation_id(tmp_path, CWD) == "real"


class TestLastTimestamp:
    """Tests for last_timestamp."""

    def test_reads_backwards(self):
        lines = [json.dumps({"timestamp": "2026-01-01T00:00:00Z"}), json.dumps({"timestamp": "2026-01-02T00:00:00Z"})]

        assert last_timestamp(lines).day == 2

    def test_epoch_milliseconds(self):
        assert last_timestamp([json.dumps({"timestamp": 1768716900646})]).year == 2026

    def test_none_when_absent(self):
        assert last_timestamp(["", "not json", "[1, 2]"]) is None


class TestResumeArguments:
    """Tests for resume argument handling."""

    def test_prepends_resume(self):
        assert with_resume_argument(["--model", "opus"], "abc") == ["--resume", "abc", "--model", "opus"]

    def test_replaces_existing_resume(self):
        args = ["--resume", "old", "--model", "opus"]

        assert with_resume_argument(args, "new") == ["--resume", "new", "--model", "opus"]

    def test_strips_all_forms(self):
        args = ["-r", "a", "--resume=b", "--verbose", "--resume", "c"]

        assert strip_resume_arguments(args) == ["--verbose"]

    def test_no_conversation_keeps_args(self):
        assert with_resume_argument(["--resume", "old"], None) == ["--resume", "old"]
