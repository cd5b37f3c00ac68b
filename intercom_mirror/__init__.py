"""Local mirror of Intercom contacts, companies, admins and conversations."""

from .cache_store import CacheStore
from .config import MirrorConfig
from .intercom_client import FetchError, IntercomClient, MalformedResponseError
from .mirror import IntercomMirror
from .models import (
    CacheSnapshot,
    CacheStatus,
    ConversationThread,
    EntityKind,
    RefreshState,
)
from .refresh_policy import CacheRefresher, RefreshPolicy, RefreshTimeoutError
from .storage import CacheStorage, PersistenceError
from .thread_service import ThreadBuildError, ThreadService

__all__ = [
    "CacheRefresher",
    "CacheSnapshot",
    "CacheStatus",
    "CacheStorage",
    "CacheStore",
    "ConversationThread",
    "EntityKind",
    "FetchError",
    "IntercomClient",
    "IntercomMirror",
    "MalformedResponseError",
    "MirrorConfig",
    "PersistenceError",
    "RefreshPolicy",
    "RefreshState",
    "RefreshTimeoutError",
    "ThreadBuildError",
    "ThreadService",
]
