"""Scheduler context: the explicitly constructed owner of shared hub state."""

import functools
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from pathlib import Path

from claudehub import scoring
from claudehub.config import HubConfig, account_env
from claudehub.errors import ConfigError
from claudehub.models import AccountUsageSnapshot, RegistryState, Selection
from claudehub.registry import SessionRegistry
from claudehub.usage import UsageCache, UsageFetcher, fetch_usage_snapshots

logger = logging.getLogger(__name__)

FetchFunc = Callable[[Mapping[str, Path]], list[AccountUsageSnapshot]]


class SchedulerContext:
    """
    Owns the configuration, the session registry handle and the usage cache.

    One instance is built at startup and handed to the components that need
    it; nothing here lives in module globals.
    """

    def __init__(
        self,
        config: HubConfig,
        registry: SessionRegistry | None = None,
        fetch: FetchFunc | None = None,
        cache: UsageCache | None = None,
    ) -> None:
        self.config = config
        self.registry = registry or SessionRegistry(config.resolved_state_file)
        self._fetch = fetch or functools.partial(fetch_usage_snapshots, fetcher=UsageFetcher(command=config.command))
        self.cache = cache or UsageCache(ttl_seconds=config.usage_cache_seconds)

    @property
    def account_ids(self) -> list[str]:
        return list(self.config.accounts)

    def account_path(self, account_id: str) -> Path:
        """
        Config directory of an account.

        Raises:
            ConfigError: If the account is not configured.
        """
        try:
            return self.config.accounts[account_id]
        except KeyError:
            available = ", ".join(self.config.accounts) or "none"
            raise ConfigError(f"Account '{account_id}' not found in config (available: {available})") from None

    def account_env(self, account_id: str) -> dict[str, str]:
        return account_env(self.account_path(account_id))

    def usage_snapshots(self, force: bool = False) -> list[AccountUsageSnapshot]:
        """Usage for every configured account, served from cache while fresh."""
        if not force:
            cached = self.cache.get()
            if cached is not None:
                return cached
        snapshots = self._fetch(self.config.accounts)
        self.cache.put(snapshots)
        logger.debug("Fetched usage for %d accounts", len(snapshots))
        return snapshots

    def registry_state(self) -> RegistryState:
        return self.registry.current()

    def select(
        self,
        snapshots: Sequence[AccountUsageSnapshot],
        exclude: str | None = None,
        now: datetime | None = None,
    ) -> Selection | None:
        return scoring.select(snapshots, self.registry_state(), self.config.scoring, exclude=exclude, now=now)

    def score_breakdown(
        self,
        snapshots: Sequence[AccountUsageSnapshot],
        now: datetime | None = None,
    ) -> list[scoring.ScoreBreakdown]:
        return scoring.score_breakdown(snapshots, self.registry_state(), self.config.scoring, now=now)
