"""
Data model for the Intercom mirror.

Entity records keep only the fields the query layer reads and carry every
other payload field in pydantic's extra bag, so a full Intercom payload
survives a round trip through the disk cache untouched.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _to_optional_str(value: Any) -> Optional[str]:
    # Intercom mixes numeric and string ids (e.g. admin_assignee_id is an int)
    if value is None or value == "":
        return None
    return str(value)


class EntityKind(str, Enum):
    """The fixed set of mirrored Intercom collections."""

    CONTACTS = "contacts"
    COMPANIES = "companies"
    ADMINS = "admins"
    CONVERSATIONS = "conversations"


class RefreshState(str, Enum):
    """Refresh policy states."""

    FRESH = "fresh"
    STALE_CHECK_NEEDED = "stale_check_needed"
    FORCE_FULL = "force_full"


# ==================== ENTITY RECORDS ====================


class EntityRecord(BaseModel):
    """Base for mirrored records: a mandatory id plus an extra-fields bag."""

    model_config = ConfigDict(extra="allow")

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None or value == "":
            raise ValueError("record has no id")
        return str(value)

    def field_value(self, name: str) -> Any:
        """Return a declared or extra field by name (None if absent)."""
        if name in type(self).model_fields:
            return getattr(self, name)
        return (self.model_extra or {}).get(name)


class Contact(EntityRecord):
    email: Optional[str] = None
    name: Optional[str] = None


class Company(EntityRecord):
    name: Optional[str] = None
    company_id: Optional[str] = None

    @field_validator("company_id", mode="before")
    @classmethod
    def _coerce_company_id(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


class Admin(EntityRecord):
    name: Optional[str] = None
    email: Optional[str] = None


class ConversationSummary(EntityRecord):
    """Conversation as returned by the list endpoint (no parts)."""

    state: Optional[str] = None
    title: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


ENTITY_MODELS = {
    EntityKind.CONTACTS: Contact,
    EntityKind.COMPANIES: Company,
    EntityKind.ADMINS: Admin,
    EntityKind.CONVERSATIONS: ConversationSummary,
}


# ==================== CACHE METADATA ====================


class ActivityCounts(BaseModel):
    """Last-seen remote counts, compared against the activity probe."""

    contacts: int = 0
    companies: int = 0
    conversations: int = 0


class CacheCounts(BaseModel):
    contacts: int = 0
    companies: int = 0
    admins: int = 0
    conversations: int = 0


class CacheMetadata(BaseModel):
    """Refresh bookkeeping persisted next to the cache."""

    last_full_refresh: Optional[datetime] = None
    last_activity: ActivityCounts = Field(default_factory=ActivityCounts)
    cache_counts: CacheCounts = Field(default_factory=CacheCounts)
    schema_version: str = "1.0"


# ==================== CONVERSATION THREADS ====================


class ThreadUser(BaseModel):
    id: str = "unknown"
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return _to_optional_str(value) or "unknown"


class ThreadAuthor(BaseModel):
    type: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


class InitialMessage(BaseModel):
    """The conversation opener (Intercom's `source`)."""

    body_raw: Optional[str] = None
    body_clean: str = ""
    created_at: Optional[int] = None
    author: Optional[ThreadAuthor] = None


class ThreadPart(BaseModel):
    """One entry of the chronological trace (comment, note, assignment, close...)."""

    id: str
    kind: str
    body_raw: Optional[str] = None
    body_clean: Optional[str] = None
    created_at: int = 0
    author_type: Optional[str] = None
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None

    @field_validator("id", "author_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


class ThreadEntry(BaseModel):
    """A note, admin response or user message with reviewer flags."""

    id: str
    body_raw: Optional[str] = None
    body_clean: str = ""
    created_at: int = 0
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    is_from_designated_reviewer_a: bool = False
    is_from_designated_reviewer_b: bool = False


ThreadState = Literal["open", "closed", "snoozed"]
THREAD_STATES = frozenset(get_args(ThreadState))


class ThreadTotals(BaseModel):
    parts: int = 0
    comments: int = 0
    notes: int = 0


class ConversationThread(BaseModel):
    """Materialized, chronologically ordered view of one conversation."""

    conversation_id: str
    state: Optional[ThreadState] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    user: ThreadUser = Field(default_factory=ThreadUser)
    initial_message: InitialMessage = Field(default_factory=InitialMessage)
    parts: List[ThreadPart] = Field(default_factory=list)
    notes: List[ThreadEntry] = Field(default_factory=list)
    admin_responses: List[ThreadEntry] = Field(default_factory=list)
    user_messages: List[ThreadEntry] = Field(default_factory=list)
    totals: ThreadTotals = Field(default_factory=ThreadTotals)
    admin_assignee_id: Optional[str] = None

    @field_validator("conversation_id", mode="before")
    @classmethod
    def _coerce_conversation_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("admin_assignee_id", mode="before")
    @classmethod
    def _coerce_assignee(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


class ThreadBatchResult(BaseModel):
    """Outcome of a batch thread build: successes plus skipped ids."""

    threads: List[ConversationThread] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.threads)

    @property
    def skipped(self) -> int:
        return len(self.skipped_ids)


class ThreadStats(BaseModel):
    """Aggregate reviewer signal across materialized threads."""

    total_threads: int = 0
    threads_with_notes: int = 0
    total_notes: int = 0
    total_admin_responses: int = 0
    total_user_messages: int = 0
    reviewer_a_notes: int = 0
    reviewer_b_notes: int = 0
    reviewer_a_responses: int = 0
    reviewer_b_responses: int = 0
    average_parts_per_thread: float = 0.0


# ==================== SNAPSHOT / STATUS ====================


class CacheSnapshot(BaseModel):
    """Point-in-time view of the cache handed to readers."""

    contacts: List[Contact] = Field(default_factory=list)
    companies: List[Company] = Field(default_factory=list)
    admins: List[Admin] = Field(default_factory=list)
    conversations: List[ConversationSummary] = Field(default_factory=list)
    threads: List[ConversationThread] = Field(default_factory=list)
    last_refreshed: Optional[datetime] = None
    metadata: CacheMetadata = Field(default_factory=CacheMetadata)

    def collection(self, kind: EntityKind) -> List[EntityRecord]:
        return getattr(self, EntityKind(kind).value)


class CacheStatus(BaseModel):
    last_refreshed: Optional[datetime] = None
    counts: Dict[str, int] = Field(default_factory=dict)
    metadata: CacheMetadata = Field(default_factory=CacheMetadata)
    age_minutes: Optional[int] = None
    is_stale: bool = True


class RefreshOutcome(BaseModel):
    """What a policy-driven refresh decided and did."""

    decision: RefreshState
    performed: Optional[str] = None  # "full" | "incremental" | None
    added: Dict[str, int] = Field(default_factory=dict)
    activity: Optional[ActivityCounts] = None
