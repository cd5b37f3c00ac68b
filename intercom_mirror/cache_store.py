"""
In-memory Intercom cache: the source of truth for readers.

Holds one collection per entity kind, the materialized conversation threads,
and the refresh metadata. Every mutation runs under `lock` and is written
through to disk before the lock is released; readers never take the lock and
get a shallow copy of the current collections.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .models import (
    ENTITY_MODELS,
    ActivityCounts,
    CacheCounts,
    CacheMetadata,
    CacheSnapshot,
    CacheStatus,
    ConversationThread,
    EntityKind,
    EntityRecord,
)
from .storage import CacheStorage, PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_MINUTES = 60


def to_records(kind: EntityKind, items: Iterable) -> List[EntityRecord]:
    """
    Validate raw payloads into records of `kind`, dropping duplicate ids.

    Items without a usable id are logged and skipped; the first occurrence of
    an id wins.
    """
    kind = EntityKind(kind)
    model = ENTITY_MODELS[kind]
    records = []
    seen = set()

    for item in items:
        if isinstance(item, model):
            record = item
        else:
            try:
                record = model.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid {kind.value} record: {e.errors()[0]['msg']}")
                continue
        if record.id in seen:
            continue
        seen.add(record.id)
        records.append(record)

    return records


class CacheStore:
    """Process-local cache of Intercom contacts, companies, admins and conversations."""

    def __init__(
        self,
        storage: Optional[CacheStorage] = None,
        stale_after_minutes: float = DEFAULT_STALE_AFTER_MINUTES,
    ):
        self.storage = storage
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.lock = asyncio.Lock()

        self._collections: Dict[EntityKind, List[EntityRecord]] = {kind: [] for kind in EntityKind}
        self._threads: Dict[str, ConversationThread] = {}
        self._last_refreshed: Optional[datetime] = None
        self._metadata = CacheMetadata()

    # ==================== READS ====================

    @property
    def metadata(self) -> CacheMetadata:
        return self._metadata

    @property
    def last_refreshed(self) -> Optional[datetime]:
        return self._last_refreshed

    def is_empty(self) -> bool:
        return self._last_refreshed is None and not any(self._collections.values())

    def ids(self, kind: EntityKind) -> List[str]:
        return [record.id for record in self._collections[EntityKind(kind)]]

    def get_thread(self, conversation_id: str) -> Optional[ConversationThread]:
        return self._threads.get(str(conversation_id))

    def get_snapshot(self) -> CacheSnapshot:
        """Cheap copy of the current state (records are shared, lists are not)."""
        return CacheSnapshot.model_construct(
            contacts=list(self._collections[EntityKind.CONTACTS]),
            companies=list(self._collections[EntityKind.COMPANIES]),
            admins=list(self._collections[EntityKind.ADMINS]),
            conversations=list(self._collections[EntityKind.CONVERSATIONS]),
            threads=list(self._threads.values()),
            last_refreshed=self._last_refreshed,
            metadata=self._metadata.model_copy(deep=True),
        )

    def get_status(self, now: Optional[datetime] = None) -> CacheStatus:
        """
        Counts, metadata and age of the cache.

        `is_stale` is a presentation flag (age above the stale threshold) and
        does not drive refresh decisions.
        """
        now = now or datetime.now(timezone.utc)
        age_minutes = None
        is_stale = True
        if self._last_refreshed is not None:
            age = now - self._last_refreshed
            age_minutes = int(age.total_seconds() // 60)
            is_stale = age > self.stale_after

        counts = {kind.value: len(records) for kind, records in self._collections.items()}
        counts["conversation_threads"] = len(self._threads)

        return CacheStatus(
            last_refreshed=self._last_refreshed,
            counts=counts,
            metadata=self._metadata.model_copy(deep=True),
            age_minutes=age_minutes,
            is_stale=is_stale,
        )

    def _cache_counts(self) -> CacheCounts:
        return CacheCounts(**{kind.value: len(records) for kind, records in self._collections.items()})

    # ==================== MUTATIONS ====================

    async def apply_full_refresh(
        self,
        entities: Mapping[EntityKind, Sequence],
        activity: Optional[ActivityCounts] = None,
        now: Optional[datetime] = None,
    ) -> CacheCounts:
        """
        Replace every collection wholesale with freshly fetched data.

        This is the only operation that sets `last_full_refresh` and the only
        one allowed to shrink a collection.
        """
        missing = [kind.value for kind in EntityKind if kind not in entities]
        if missing:
            raise ValueError(f"Full refresh is missing collections: {', '.join(missing)}")

        # Validate before taking the lock so a bad payload leaves state untouched
        replacements = {kind: to_records(kind, entities[kind]) for kind in EntityKind}
        now = now or datetime.now(timezone.utc)

        async with self.lock:
            self._collections = replacements
            self._last_refreshed = now
            counts = self._cache_counts()
            self._metadata = CacheMetadata(
                last_full_refresh=now,
                last_activity=activity or ActivityCounts(
                    contacts=counts.contacts,
                    companies=counts.companies,
                    conversations=counts.conversations,
                ),
                cache_counts=counts,
                schema_version=self._metadata.schema_version,
            )
            await self._persist_locked()

        logger.info(
            f"Full refresh applied. Contacts: {counts.contacts}, Companies: {counts.companies}, "
            f"Admins: {counts.admins}, Conversations: {counts.conversations}"
        )
        return counts

    async def apply_incremental_merge(
        self,
        new_entities: Mapping[EntityKind, Sequence],
        activity: Optional[ActivityCounts] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Append records whose ids are not cached yet.

        Existing records are never updated or removed, so every collection
        can only grow. `last_full_refresh` is left alone.

        Returns:
            Number of records added per kind
        """
        incoming = {EntityKind(kind): to_records(kind, items) for kind, items in new_entities.items()}
        now = now or datetime.now(timezone.utc)
        added = {}

        async with self.lock:
            for kind, records in incoming.items():
                existing_ids = {record.id for record in self._collections[kind]}
                fresh = [record for record in records if record.id not in existing_ids]
                if fresh:
                    self._collections[kind] = self._collections[kind] + fresh
                added[kind.value] = len(fresh)

            self._last_refreshed = now
            if activity is not None:
                self._metadata.last_activity = activity.model_copy()
            self._metadata.cache_counts = self._cache_counts()
            await self._persist_locked()

        logger.info(
            "Incremental merge applied. Added: "
            + ", ".join(f"{count} {kind}" for kind, count in added.items())
        )
        return added

    async def apply_threads(self, threads: Iterable[ConversationThread]) -> int:
        """Upsert materialized threads by conversation id."""
        count = 0
        async with self.lock:
            for thread in threads:
                self._threads[thread.conversation_id] = thread
                count += 1
            if count:
                await self._persist_locked()
        return count

    async def load_from_disk(self) -> bool:
        """
        Replace in-memory state with the persisted snapshot, if any.

        Returns:
            True if a snapshot was loaded; False on cold start or unreadable files
        """
        if self.storage is None:
            return False

        async with self.lock:
            try:
                snapshot = await asyncio.to_thread(self.storage.load)
            except PersistenceError as e:
                logger.warning(f"Ignoring unreadable cache, will rebuild: {e}")
                return False
            if snapshot is None:
                return False

            for kind in EntityKind:
                self._collections[kind] = list(snapshot.collection(kind))
            self._threads = {thread.conversation_id: thread for thread in snapshot.threads}
            self._last_refreshed = snapshot.last_refreshed
            self._metadata = snapshot.metadata

        counts = self._cache_counts()
        logger.info(
            f"Cache loaded from disk. Contacts: {counts.contacts}, Companies: {counts.companies}, "
            f"Admins: {counts.admins}, Conversations: {counts.conversations}, Threads: {len(self._threads)}"
        )
        return True

    async def _persist_locked(self) -> None:
        # Caller holds self.lock. A failed write keeps the in-memory state.
        if self.storage is None:
            return
        snapshot = self.get_snapshot()
        try:
            await asyncio.to_thread(self.storage.save, snapshot)
        except PersistenceError as e:
            logger.error(f"Cache write failed, in-memory cache is still current: {e}")
