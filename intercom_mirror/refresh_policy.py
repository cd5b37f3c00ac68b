"""
Refresh policy for the Intercom cache.

Decision flow for a policy-driven refresh:
1. Load the persisted cache if memory is empty.
2. No full refresh yet, or the last one is older than the hard ceiling
   (24h by default) → FORCE_FULL: refetch every collection.
3. Otherwise → STALE_CHECK_NEEDED: probe contacts/companies/conversations
   with one-item pages and compare their totals to the last seen counts.
   Any count went up → incremental merge; nothing changed → FRESH (no-op).
   A failed probe counts as "something changed".

Refreshes are single-flight per kind: callers arriving while a refresh of
the same kind is running await that refresh instead of starting another.
Full and incremental runs never overlap. A full refresh waits for a running
incremental merge to land before it fetches, and an incremental requested
while a full refresh is running joins that full refresh.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from .cache_store import CacheStore
from .intercom_client import FetchError, IntercomClient
from .models import (
    ActivityCounts,
    CacheCounts,
    CacheMetadata,
    EntityKind,
    RefreshOutcome,
    RefreshState,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FULL_REFRESH_MAX_AGE = timedelta(hours=24)

# Endpoint path and preferred array keys per collection
LIST_ENDPOINTS = {
    EntityKind.CONTACTS: ("/contacts", ["contacts", "data"]),
    EntityKind.COMPANIES: ("/companies", ["companies", "data"]),
    EntityKind.ADMINS: ("/admins", ["admins", "data"]),
    EntityKind.CONVERSATIONS: ("/conversations", ["conversations", "data"]),
}

# Count-only probes: one item per page, so total_pages == total
PROBE_PATHS = {
    "contacts": "/contacts?per_page=1",
    "companies": "/companies?per_page=1",
    "conversations": "/conversations?per_page=1&order=desc",
}


class RefreshTimeoutError(FetchError):
    """A refresh ran longer than the configured timeout and was aborted."""


@dataclass
class ProbeResult:
    """Outcome of the activity probe."""

    has_new_activity: bool
    counts: ActivityCounts
    error: Optional[str] = None


class RefreshPolicy:
    """Pure decision rules; no I/O."""

    def __init__(self, full_refresh_max_age: timedelta = DEFAULT_FULL_REFRESH_MAX_AGE):
        self.full_refresh_max_age = full_refresh_max_age

    def assess_age(self, metadata: CacheMetadata, now: Optional[datetime] = None) -> RefreshState:
        """FORCE_FULL when there was never a full refresh or it is past the ceiling."""
        if metadata.last_full_refresh is None:
            return RefreshState.FORCE_FULL
        now = now or datetime.now(timezone.utc)
        if now - metadata.last_full_refresh > self.full_refresh_max_age:
            return RefreshState.FORCE_FULL
        return RefreshState.STALE_CHECK_NEEDED

    @staticmethod
    def has_new_activity(observed: ActivityCounts, recorded: ActivityCounts) -> bool:
        return (
            observed.contacts > recorded.contacts
            or observed.companies > recorded.companies
            or observed.conversations > recorded.conversations
        )

    def decide(
        self,
        metadata: CacheMetadata,
        probe: Optional[ProbeResult] = None,
        now: Optional[datetime] = None,
    ) -> RefreshState:
        """
        Full decision given an (optional) probe result.

        The age ceiling wins over the probe: a cache past it is refreshed in
        full even when the probe saw no change.
        """
        state = self.assess_age(metadata, now)
        if state is RefreshState.FORCE_FULL or probe is None:
            return state
        if probe.has_new_activity:
            return RefreshState.STALE_CHECK_NEEDED
        return RefreshState.FRESH


class ActivityProbe:
    """Cheap change detection via one-item list pages."""

    def __init__(self, client: IntercomClient):
        self.client = client

    async def check(self, recorded: ActivityCounts) -> ProbeResult:
        logger.info("Checking for new activity...")
        results = await asyncio.gather(
            *(self.client.probe_count(path) for path in PROBE_PATHS.values()),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            # Assume activity rather than silently going stale
            logger.error(f"Activity probe failed, assuming new activity: {errors[0]}")
            return ProbeResult(has_new_activity=True, counts=recorded.model_copy(), error=str(errors[0]))

        observed = ActivityCounts(**dict(zip(PROBE_PATHS, results)))
        has_new = RefreshPolicy.has_new_activity(observed, recorded)
        logger.info(
            f"Activity check - Contacts: {observed.contacts} (was {recorded.contacts}), "
            f"Companies: {observed.companies} (was {recorded.companies}), "
            f"Conversations: {observed.conversations} (was {recorded.conversations})"
        )
        return ProbeResult(has_new_activity=has_new, counts=observed)


async def _gather_or_raise(*aws: Awaitable) -> List:
    # Let sibling fetches finish before surfacing the first failure
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


class CacheRefresher:
    """Runs full, incremental and policy-driven refreshes against a CacheStore."""

    def __init__(
        self,
        client: IntercomClient,
        store: CacheStore,
        policy: Optional[RefreshPolicy] = None,
        probe: Optional[ActivityProbe] = None,
        incremental_per_page: int = 50,
        incremental_max_pages: int = 1,
        refresh_timeout: Optional[float] = None,
    ):
        self.client = client
        self.store = store
        self.policy = policy or RefreshPolicy()
        self.probe = probe or ActivityProbe(client)
        self.incremental_per_page = incremental_per_page
        self.incremental_max_pages = incremental_max_pages
        self.refresh_timeout = refresh_timeout

        self._inflight: Dict[str, asyncio.Task] = {}
        self._flight_lock = asyncio.Lock()
        # Held for the fetch and apply of full and incremental runs
        self._refresh_lock = asyncio.Lock()

    # ==================== SINGLE-FLIGHT ====================

    def is_running(self, kind: str) -> bool:
        task = self._inflight.get(kind)
        return task is not None and not task.done()

    async def run_single_flight(self, kind: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run `factory()` unless a `kind` run is already in flight; either way
        await the one shared result.

        The shared task is shielded so one caller being cancelled does not
        cancel it for everyone else.
        """
        async with self._flight_lock:
            task = self._inflight.get(kind)
            if task is None or task.done():
                task = asyncio.ensure_future(factory())
                self._inflight[kind] = task
                task.add_done_callback(lambda t, k=kind: self._forget(k, t))
            else:
                logger.info(f"Joining in-flight {kind} refresh")
        return await asyncio.shield(task)

    def _forget(self, kind: str, task: asyncio.Task) -> None:
        if self._inflight.get(kind) is task:
            del self._inflight[kind]

    async def _exclusive(self, run: Callable[[], Awaitable[T]], label: str) -> T:
        async with self._refresh_lock:
            return await self._with_timeout(run(), label)

    async def _with_timeout(self, aw: Awaitable[T], label: str) -> T:
        if not self.refresh_timeout:
            return await aw
        try:
            return await asyncio.wait_for(aw, timeout=self.refresh_timeout)
        except asyncio.TimeoutError as e:
            raise RefreshTimeoutError(f"{label} refresh exceeded {self.refresh_timeout:.0f}s") from e

    # ==================== REFRESHES ====================

    async def full_refresh(self) -> CacheCounts:
        """
        Refetch all four collections in parallel and replace the cache.

        Any fetch failure aborts the refresh and leaves the cache untouched.
        A running incremental merge is allowed to finish first so its older
        sample cannot land on top of the replaced collections.

        Raises:
            FetchError: if any collection could not be fetched
        """
        return await self.run_single_flight("full", lambda: self._exclusive(self._full, "full"))

    async def _full(self) -> CacheCounts:
        logger.info("Performing full refresh...")
        kinds = list(LIST_ENDPOINTS)
        try:
            results = await _gather_or_raise(
                *(self.client.fetch_all(path, keys) for path, keys in LIST_ENDPOINTS.values())
            )
        except Exception as e:
            logger.error(f"Error in full refresh: {e}")
            raise
        return await self.store.apply_full_refresh(dict(zip(kinds, results)))

    async def incremental_refresh(self, activity: Optional[ActivityCounts] = None) -> RefreshOutcome:
        """
        Fetch a page-limited sample of recent records and merge unseen ids.

        Joins the full refresh instead when one is running. On failure, falls
        back to one full refresh; if that fails too, its error propagates.
        """
        if self.is_running("full"):
            logger.info("Full refresh in flight, joining it instead of merging a sample")
            await self.full_refresh()
            return RefreshOutcome(
                decision=RefreshState.STALE_CHECK_NEEDED, performed="full", activity=activity
            )
        try:
            added = await self.run_single_flight(
                "incremental",
                lambda: self._exclusive(lambda: self._incremental(activity), "incremental"),
            )
        except Exception as e:
            logger.error(f"Error in incremental update, falling back to full refresh: {e}")
            await self.full_refresh()
            return RefreshOutcome(
                decision=RefreshState.STALE_CHECK_NEEDED, performed="full", activity=activity
            )
        return RefreshOutcome(
            decision=RefreshState.STALE_CHECK_NEEDED,
            performed="incremental",
            added=added,
            activity=activity,
        )

    async def _incremental(self, activity: Optional[ActivityCounts]) -> Dict[str, int]:
        logger.info("Performing incremental update...")
        per_page = self.incremental_per_page
        sample_paths = {
            EntityKind.CONTACTS: f"/contacts?per_page={per_page}",
            EntityKind.COMPANIES: f"/companies?per_page={per_page}",
            EntityKind.CONVERSATIONS: f"/conversations?per_page={per_page}&order=desc",
        }
        results = await _gather_or_raise(
            *(
                self.client.fetch_all(path, LIST_ENDPOINTS[kind][1], max_pages=self.incremental_max_pages)
                for kind, path in sample_paths.items()
            )
        )
        return await self.store.apply_incremental_merge(
            dict(zip(sample_paths, results)), activity=activity
        )

    async def smart_refresh(self, now: Optional[datetime] = None) -> RefreshOutcome:
        """
        Policy-driven refresh: no-op, incremental merge or full refresh.

        Raises:
            FetchError: if a required full refresh fails
        """
        return await self.run_single_flight("smart", lambda: self._smart(now))

    async def _smart(self, now: Optional[datetime]) -> RefreshOutcome:
        if self.store.is_empty():
            await self.store.load_from_disk()

        now = now or datetime.now(timezone.utc)
        metadata = self.store.metadata

        if self.policy.assess_age(metadata, now) is RefreshState.FORCE_FULL:
            logger.info("Cache is empty or past its full-refresh age, performing full refresh")
            await self.full_refresh()
            return RefreshOutcome(decision=RefreshState.FORCE_FULL, performed="full")

        probe = await self.probe.check(metadata.last_activity)
        if self.policy.decide(metadata, probe, now) is RefreshState.FRESH:
            logger.info("No new activity detected, using existing cache")
            return RefreshOutcome(decision=RefreshState.FRESH, activity=probe.counts)

        logger.info("New activity detected, performing incremental update")
        return await self.incremental_refresh(probe.counts)
