"""
Usage quota source.

Reads each account's OAuth token, asks the usage endpoint for the two quota
windows, and turns the answer into ``AccountUsageSnapshot`` values. A failure
for one account becomes an error snapshot for that account; fetching never
fails as a whole.
"""

import hashlib
import json
import logging
import subprocess
import sys
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import requests

from claudehub.config import DEFAULT_COMMAND, account_env, default_account_dir
from claudehub.models import AccountUsageSnapshot

logger = logging.getLogger(__name__)

USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
API_BETA_HEADER = "oauth-2025-04-20"
KEYCHAIN_SERVICE_BASE = "Claude Code-credentials"
# (connect timeout, read timeout) in seconds
REQUEST_TIMEOUT = (5, 20)
SESSION_WINDOW = timedelta(hours=5)
ROLLING_WINDOW = timedelta(days=7)


class UsageFetchError(Exception):
    """Usage for a single account could not be fetched."""


class TokenExpiredError(UsageFetchError):
    """The usage endpoint rejected the access token."""


def is_default_dir(config_dir: Path) -> bool:
    return config_dir.expanduser().resolve() == default_account_dir().resolve()


def keychain_service_name(config_dir: Path) -> str:
    """Keychain entry holding the token for a config directory."""
    if is_default_dir(config_dir):
        return KEYCHAIN_SERVICE_BASE
    digest = hashlib.sha256(str(config_dir.expanduser()).encode("utf-8")).hexdigest()
    return f"{KEYCHAIN_SERVICE_BASE}-{digest[:8]}"


def _token_from_payload(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    oauth = payload.get("claudeAiOauth")
    if isinstance(oauth, dict):
        token = oauth.get("accessToken")
        if isinstance(token, str) and token:
            return token
    return None


def read_access_token(config_dir: Path) -> str:
    """
    Find the OAuth access token for an account.

    Looks in ``.credentials.json`` first, then in the macOS keychain.

    Raises:
        UsageFetchError: If no token can be found.
    """
    credentials = config_dir / ".credentials.json"
    try:
        token = _token_from_payload(json.loads(credentials.read_text(encoding="utf-8")))
        if token:
            return token
    except FileNotFoundError:
        pass
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Unreadable credentials %s: %s", credentials, exc)

    if sys.platform == "darwin":
        service = keychain_service_name(config_dir)
        result = subprocess.run(
            ["security", "find-generic-password", "-s", service, "-w"],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode == 0:
            try:
                token = _token_from_payload(json.loads(result.stdout.strip()))
            except json.JSONDecodeError:
                token = None
            if token:
                return token

    raise UsageFetchError(f"Not logged in for {config_dir}. Run the CLI with that config to authenticate.")


def read_account_email(config_dir: Path) -> str | None:
    """Email of the logged-in account, from its .claude.json."""
    if is_default_dir(config_dir):
        path = Path.home() / ".claude.json"
    else:
        path = config_dir / ".claude.json"
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    account = data.get("oauthAccount") if isinstance(data, dict) else None
    if isinstance(account, dict) and isinstance(account.get("emailAddress"), str):
        return account["emailAddress"]
    return None


def _parse_reset(value: object, fallback: datetime) -> datetime:
    if not isinstance(value, str) or not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def _utilization(window: Mapping[str, Any]) -> float:
    value = window.get("utilization")
    if value is None:
        return 0.0
    # bool is an int subclass but never a valid utilization
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UsageFetchError(f"Unexpected utilization value: {value!r}")
    return float(value)


def parse_usage_response(
    account_id: str,
    payload: Mapping[str, Any],
    email: str | None = None,
    now: datetime | None = None,
) -> AccountUsageSnapshot:
    """
    Convert a usage endpoint response into a snapshot.

    A window without a reset time has not started yet, so it is treated as
    resetting one full window from now.

    Raises:
        UsageFetchError: If a window is missing or malformed.
    """
    now = now or datetime.now().astimezone()
    session = payload.get("five_hour")
    window = payload.get("seven_day")
    if not isinstance(session, Mapping) or not isinstance(window, Mapping):
        raise UsageFetchError("Usage response is missing quota windows")

    session_used = _utilization(session)
    window_used = _utilization(window)
    return AccountUsageSnapshot(
        account_id=account_id,
        session_remaining_pct=round(100 - session_used),
        session_reset_at=_parse_reset(session.get("resets_at"), now + SESSION_WINDOW),
        window_remaining_pct=round(100 - window_used),
        window_reset_at=_parse_reset(window.get("resets_at"), now + ROLLING_WINDOW),
        email=email,
    )


class UsageFetcher:
    """Fetches usage snapshots for a set of accounts from the usage endpoint."""

    def __init__(
        self,
        session: requests.Session | None = None,
        command: str = DEFAULT_COMMAND,
        max_workers: int = 8,
    ) -> None:
        self._session = session or requests.Session()
        self._command = command
        self._max_workers = max_workers

    def request_usage(self, token: str) -> dict[str, Any]:
        """
        Call the usage endpoint.

        Raises:
            TokenExpiredError: On HTTP 401.
            UsageFetchError: On any other transport or HTTP failure.
        """
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "anthropic-beta": API_BETA_HEADER,
        }
        try:
            response = self._session.get(USAGE_API_URL, headers=headers, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            raise UsageFetchError(f"Network error: {exc}") from exc

        if response.status_code == 401:
            raise TokenExpiredError("Token expired. Run the CLI in a terminal to refresh it.")
        if response.status_code != 200:
            raise UsageFetchError(f"API error {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as exc:
            raise UsageFetchError(f"Failed to parse API response: {exc}") from exc
        if not isinstance(data, dict):
            raise UsageFetchError("Usage response is not an object")
        return data

    def refresh_token(self, config_dir: Path) -> bool:
        """
        Let the CLI refresh an expired token.

        The CLI refreshes tokens on startup; with stdin closed it exits right
        after, without consuming any usage.
        """
        try:
            subprocess.run(
                [self._command],
                env=account_env(config_dir),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=30,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Token refresh for %s failed: %s", config_dir, exc)
            return False
        return True

    def fetch_one(self, account_id: str, config_dir: Path) -> AccountUsageSnapshot:
        """Fetch usage for one account, returning an error snapshot on failure."""
        email = read_account_email(config_dir)
        try:
            token = read_access_token(config_dir)
            try:
                payload = self.request_usage(token)
            except TokenExpiredError:
                if not self.refresh_token(config_dir):
                    return AccountUsageSnapshot.failed(account_id, "Token expired. Refresh failed.", email)
                payload = self.request_usage(read_access_token(config_dir))
            return parse_usage_response(account_id, payload, email)
        except UsageFetchError as exc:
            logger.warning("Usage fetch for %s failed: %s", account_id, exc)
            return AccountUsageSnapshot.failed(account_id, str(exc), email)
        except Exception as exc:
            logger.exception("Unexpected error fetching usage for %s", account_id)
            return AccountUsageSnapshot.failed(account_id, f"Unexpected error: {exc}", email)

    def fetch(self, accounts: Mapping[str, Path]) -> list[AccountUsageSnapshot]:
        """Fetch every account concurrently, preserving the accounts' order."""
        if not accounts:
            return []
        workers = max(1, min(self._max_workers, len(accounts)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="UsageFetcher") as pool:
            return list(pool.map(lambda item: self.fetch_one(*item), accounts.items()))


def fetch_usage_snapshots(
    accounts: Mapping[str, Path],
    fetcher: UsageFetcher | None = None,
) -> list[AccountUsageSnapshot]:
    """One snapshot per account, in order; failures are carried as error snapshots."""
    return (fetcher or UsageFetcher()).fetch(accounts)


class UsageCache:
    """
    Short-lived cache of the last fetched snapshots.

    Cached data is discarded early when any session reset instant has already
    passed, since the quota it describes no longer exists.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshots: list[AccountUsageSnapshot] | None = None
        self._fetched_at = 0.0

    def is_fresh(self, now: datetime | None = None) -> bool:
        if self._snapshots is None:
            return False
        if self._clock() - self._fetched_at >= self._ttl:
            return False
        now = now or datetime.now().astimezone()
        return not any(not s.has_error and s.session_reset_at < now for s in self._snapshots)

    def get(self, now: datetime | None = None) -> list[AccountUsageSnapshot] | None:
        if not self.is_fresh(now):
            return None
        return list(self._snapshots or [])

    def put(self, snapshots: list[AccountUsageSnapshot]) -> None:
        self._snapshots = list(snapshots)
        self._fetched_at = self._clock()

    def clear(self) -> None:
        self._snapshots = None
        self._fetched_at = 0.0
