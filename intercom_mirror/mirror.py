"""
Read API over the Intercom mirror.

Everything the rest of an application is meant to call lives here:
snapshots, status, filtered search, forced refreshes and thread building.
Searches run a policy-driven refresh first (usually a no-op) and then filter
the in-memory cache; `live=True` bypasses the cache for a one-shot fetch.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence

from .cache_store import CacheStore, to_records
from .config import MirrorConfig
from .intercom_client import FetchError, IntercomClient
from .models import (
    CacheCounts,
    CacheSnapshot,
    CacheStatus,
    ConversationThread,
    EntityKind,
    EntityRecord,
    RefreshOutcome,
    ThreadBatchResult,
    ThreadStats,
)
from .refresh_policy import LIST_ENDPOINTS, CacheRefresher, RefreshPolicy
from .storage import CacheStorage
from .thread_service import ThreadService, summarize_threads

logger = logging.getLogger(__name__)


def _active_filters(filters: Optional[Mapping[str, Optional[str]]]) -> Dict[str, str]:
    # Empty values mean "don't filter on this field"
    return {
        field: str(value).lower()
        for field, value in (filters or {}).items()
        if value is not None and str(value) != ""
    }


def matches_filters(record: EntityRecord, filters: Mapping[str, str]) -> bool:
    """Case-insensitive substring match on every filter (AND)."""
    for field, needle in filters.items():
        value = record.field_value(field)
        if value is None or needle not in str(value).lower():
            return False
    return True


class IntercomMirror:
    """Facade over the cache store, refresh engine and thread service."""

    def __init__(
        self,
        client: IntercomClient,
        store: CacheStore,
        refresher: Optional[CacheRefresher] = None,
        threads: Optional[ThreadService] = None,
    ):
        self.client = client
        self.store = store
        self.refresher = refresher or CacheRefresher(client, store)
        self.threads = threads or ThreadService(client)

    @classmethod
    def from_config(cls, config: Optional[MirrorConfig] = None) -> "IntercomMirror":
        """Wire up a mirror from config (environment by default)."""
        config = config or MirrorConfig.from_env()
        client = IntercomClient.from_config(config)
        store = CacheStore(
            CacheStorage(config.cache_dir),
            stale_after_minutes=config.stale_after_minutes,
        )
        refresher = CacheRefresher(
            client,
            store,
            policy=RefreshPolicy(timedelta(hours=config.full_refresh_max_age_hours)),
            incremental_per_page=config.incremental_per_page,
            incremental_max_pages=config.incremental_max_pages,
            refresh_timeout=config.refresh_timeout_seconds,
        )
        return cls(client, store, refresher, ThreadService.from_config(client, config))

    def close(self) -> None:
        self.client.session.close()

    # ==================== CACHE ====================

    async def load(self) -> bool:
        """Warm the in-memory cache from disk (False on cold start)."""
        return await self.store.load_from_disk()

    def get_snapshot(self) -> CacheSnapshot:
        return self.store.get_snapshot()

    def get_status(self, now: Optional[datetime] = None) -> CacheStatus:
        return self.store.get_status(now)

    async def refresh(self) -> RefreshOutcome:
        """Policy-driven refresh; may be a no-op."""
        return await self.refresher.smart_refresh()

    async def force_full_refresh(self) -> CacheCounts:
        """Full refresh regardless of cache age or activity."""
        return await self.refresher.full_refresh()

    # ==================== SEARCH ====================

    async def search(
        self,
        kind: EntityKind,
        filters: Optional[Mapping[str, Optional[str]]] = None,
        live: bool = False,
    ) -> List[EntityRecord]:
        """
        Filter one collection.

        With live=True the collection is fetched straight from Intercom and
        the cache is left alone. Otherwise a failed refresh is logged and the
        cached (possibly stale) data is searched anyway.

        Raises:
            FetchError: only for live searches
        """
        kind = EntityKind(kind)
        active = _active_filters(filters)

        if live:
            path, keys = LIST_ENDPOINTS[kind]
            records = to_records(kind, await self.client.fetch_all(path, keys))
        else:
            try:
                await self.refresher.smart_refresh()
            except FetchError as e:
                logger.warning(f"Refresh failed, searching cached {kind.value}: {e}")
            records = self.store.get_snapshot().collection(kind)

        return [record for record in records if matches_filters(record, active)]

    async def search_contacts(
        self,
        email: Optional[str] = None,
        name: Optional[str] = None,
        live: bool = False,
    ) -> List[EntityRecord]:
        return await self.search(EntityKind.CONTACTS, {"email": email, "name": name}, live=live)

    async def search_companies(self, name: Optional[str] = None, live: bool = False) -> List[EntityRecord]:
        return await self.search(EntityKind.COMPANIES, {"name": name}, live=live)

    # ==================== THREADS ====================

    def get_thread(self, conversation_id: str) -> Optional[ConversationThread]:
        return self.store.get_thread(conversation_id)

    async def build_thread(self, conversation_id: str) -> ConversationThread:
        """
        Build one thread and keep it in the cache.

        Raises:
            ThreadBuildError: if the conversation cannot be fetched or parsed
        """
        thread = await self.threads.build_thread(conversation_id)
        await self.store.apply_threads([thread])
        return thread

    async def build_threads_batch(
        self,
        conversation_ids: Sequence[str],
        batch_size: Optional[int] = None,
        inter_batch_delay: Optional[float] = None,
    ) -> ThreadBatchResult:
        result = await self.threads.build_threads_batch(conversation_ids, batch_size, inter_batch_delay)
        await self.store.apply_threads(result.threads)
        return result

    async def refresh_conversation_threads(self, limit: Optional[int] = None) -> ThreadBatchResult:
        """
        Rebuild threads for the cached conversations (the first `limit` if given).

        Concurrent calls with the same limit share one run.
        """

        async def run() -> ThreadBatchResult:
            if self.store.is_empty():
                await self.store.load_from_disk()
            ids = self.store.ids(EntityKind.CONVERSATIONS)
            if limit is not None:
                ids = ids[:limit]
            if not ids:
                logger.warning("No cached conversations to build threads for")
                return ThreadBatchResult()
            return await self.build_threads_batch(ids)

        return await self.refresher.run_single_flight(f"threads:{limit}", run)

    def thread_stats(self) -> ThreadStats:
        return summarize_threads(self.store.get_snapshot().threads)
