"""
Cache persistence tests.

Run with: pytest tests/test_storage.py -v
"""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from intercom_mirror.models import (
    ActivityCounts,
    Admin,
    CacheCounts,
    CacheMetadata,
    CacheSnapshot,
    Company,
    Contact,
    ConversationSummary,
    ConversationThread,
)
from intercom_mirror.storage import (
    CACHE_FILENAME,
    METADATA_FILENAME,
    CacheStorage,
    PersistenceError,
)

pytestmark = pytest.mark.medium


def make_snapshot():
    refreshed = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    return CacheSnapshot(
        contacts=[
            Contact(id="c1", email="ann@acme.com", name="Ann", custom_attributes={"plan": "pro"}),
            Contact(id=2, email=None, name="Bob"),
        ],
        companies=[Company(id="co1", name="Acme", company_id=1001)],
        admins=[Admin(id=7, name="Jo", email="jo@us.com")],
        conversations=[ConversationSummary(id="77", state="open", created_at=1700000000, priority="priority")],
        threads=[ConversationThread(conversation_id="77", state="open")],
        last_refreshed=refreshed,
        metadata=CacheMetadata(
            last_full_refresh=refreshed,
            last_activity=ActivityCounts(contacts=2, companies=1, conversations=1),
            cache_counts=CacheCounts(contacts=2, companies=1, admins=1, conversations=1),
        ),
    )


class TestCacheStorage:

    def test_cold_start_returns_none(self, cache_dir):
        assert CacheStorage(cache_dir).load() is None

    def test_missing_directory_is_cold_start(self, tmp_path):
        assert CacheStorage(tmp_path / "nope").load() is None

    def test_round_trip_preserves_snapshot(self, cache_dir):
        storage = CacheStorage(cache_dir)
        snapshot = make_snapshot()

        storage.save(snapshot)
        loaded = storage.load()

        assert loaded.model_dump() == snapshot.model_dump()
        # Extra payload fields survive the round trip
        assert loaded.contacts[0].field_value("custom_attributes") == {"plan": "pro"}
        assert loaded.contacts[1].id == "2"

    def test_writes_two_files_with_expected_layout(self, cache_dir):
        CacheStorage(cache_dir).save(make_snapshot())

        cache_data = json.loads((cache_dir / CACHE_FILENAME).read_text())
        metadata = json.loads((cache_dir / METADATA_FILENAME).read_text())

        assert set(cache_data) == {"contacts", "companies", "admins", "conversations", "threads", "last_refreshed"}
        assert metadata["last_activity"] == {"contacts": 2, "companies": 1, "conversations": 1}
        assert metadata["schema_version"] == "1.0"

    def test_creates_cache_directory(self, tmp_path):
        target = tmp_path / "deep" / "cache"

        CacheStorage(target).save(make_snapshot())

        assert (target / CACHE_FILENAME).exists()

    def test_no_temp_files_left_behind(self, cache_dir):
        CacheStorage(cache_dir).save(make_snapshot())

        assert sorted(p.name for p in cache_dir.iterdir()) == sorted([CACHE_FILENAME, METADATA_FILENAME])

    def test_failed_write_keeps_previous_file(self, cache_dir):
        storage = CacheStorage(cache_dir)
        storage.save(make_snapshot())
        before = (cache_dir / CACHE_FILENAME).read_text()

        with patch("intercom_mirror.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                storage.save(CacheSnapshot())

        assert (cache_dir / CACHE_FILENAME).read_text() == before
        assert not [p for p in cache_dir.iterdir() if p.name.endswith(".tmp")]

    def test_corrupt_json_raises_persistence_error(self, cache_dir):
        (cache_dir / CACHE_FILENAME).write_text("{not json")
        (cache_dir / METADATA_FILENAME).write_text("{}")

        with pytest.raises(PersistenceError):
            CacheStorage(cache_dir).load()

    def test_schema_mismatch_raises_persistence_error(self, cache_dir):
        (cache_dir / CACHE_FILENAME).write_text(json.dumps({"contacts": [{"email": "no-id@x.com"}]}))
        (cache_dir / METADATA_FILENAME).write_text("{}")

        with pytest.raises(PersistenceError):
            CacheStorage(cache_dir).load()

    def test_non_object_file_raises_persistence_error(self, cache_dir):
        (cache_dir / CACHE_FILENAME).write_text("[]")
        (cache_dir / METADATA_FILENAME).write_text("{}")

        with pytest.raises(PersistenceError):
            CacheStorage(cache_dir).load()
