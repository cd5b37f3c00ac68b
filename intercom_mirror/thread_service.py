"""
Conversation thread materializer.

Turns a full Intercom conversation (GET /conversations/{id}) into a
ConversationThread: the opening message, every part in chronological order,
and the notes, admin responses and user messages pulled out of those parts.
Notes and admin responses are flagged when written by one of the two
designated reviewers (matched by admin id and by admin email).
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional, Sequence

import aiohttp
from pydantic import ValidationError

from .config import MirrorConfig
from .intercom_client import FetchError, IntercomClient
from .models import (
    THREAD_STATES,
    ConversationThread,
    InitialMessage,
    ThreadAuthor,
    ThreadBatchResult,
    ThreadEntry,
    ThreadPart,
    ThreadStats,
    ThreadTotals,
    ThreadUser,
)
from .utils.html_cleaner import clean_conversation_message

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_INTER_BATCH_DELAY = 1.0  # seconds


class ThreadBuildError(Exception):
    """A single conversation could not be fetched or materialized."""

    def __init__(self, conversation_id: str, reason: str):
        super().__init__(f"Conversation {conversation_id}: {reason}")
        self.conversation_id = conversation_id
        self.reason = reason


def _author_fields(author: Optional[dict]) -> dict:
    author = author if isinstance(author, dict) else {}
    return {
        "type": author.get("type"),
        "id": author.get("id"),
        "name": author.get("name"),
        "email": author.get("email"),
    }


def _resolve_user(detail: dict) -> ThreadUser:
    """Source author when it is a user, else the first linked contact."""
    source_author = (detail.get("source") or {}).get("author") or {}
    if source_author.get("type") == "user" and source_author.get("id"):
        return ThreadUser(
            id=source_author["id"],
            name=source_author.get("name"),
            email=source_author.get("email"),
        )

    contacts = detail.get("contacts") or {}
    contact_list = contacts.get("contacts", []) if isinstance(contacts, dict) else []
    if contact_list and isinstance(contact_list[0], dict):
        contact = contact_list[0]
        return ThreadUser(id=contact.get("id"), name=contact.get("name"), email=contact.get("email"))

    return ThreadUser()


def _raw_parts(detail: dict) -> List[dict]:
    container = detail.get("conversation_parts") or {}
    parts = container.get("conversation_parts", []) if isinstance(container, dict) else []
    return [part for part in parts if isinstance(part, dict)]


def _to_entry(
    part: ThreadPart,
    reviewer_a_id: Optional[str],
    reviewer_b_email: Optional[str],
    flag_reviewers: bool = True,
) -> ThreadEntry:
    return ThreadEntry(
        id=part.id,
        body_raw=part.body_raw,
        body_clean=part.body_clean or "",
        created_at=part.created_at,
        author_id=part.author_id,
        author_name=part.author_name,
        author_email=part.author_email,
        is_from_designated_reviewer_a=(
            flag_reviewers and reviewer_a_id is not None and part.author_id == reviewer_a_id
        ),
        is_from_designated_reviewer_b=(
            flag_reviewers and reviewer_b_email is not None and part.author_email == reviewer_b_email
        ),
    )


def build_conversation_thread(
    detail: dict,
    reviewer_a_id: Optional[str] = None,
    reviewer_b_email: Optional[str] = None,
    clean: Callable[[str], str] = clean_conversation_message,
) -> ConversationThread:
    """
    Materialize a thread from a conversation detail payload.

    Parts are sorted by created_at (stable, so ties keep API order); notes,
    admin responses and user messages keep that order.

    Raises:
        ThreadBuildError: if the payload is not a conversation
    """
    if not isinstance(detail, dict) or not detail.get("id"):
        raise ThreadBuildError("?", "payload has no conversation id")

    conversation_id = str(detail["id"])
    reviewer_a_id = str(reviewer_a_id) if reviewer_a_id is not None else None

    try:
        source = detail.get("source") or {}
        source_author = source.get("author")
        initial_message = InitialMessage(
            body_raw=source.get("body"),
            body_clean=clean(source.get("body") or ""),
            created_at=detail.get("created_at"),
            author=ThreadAuthor(**_author_fields(source_author)) if source_author else None,
        )

        raw_parts = _raw_parts(detail)
        part_kinds = [raw.get("part_type") for raw in raw_parts]

        state = detail.get("state")
        if state is not None and state not in THREAD_STATES:
            logger.warning(f"Conversation {conversation_id}: unknown state {state!r}, leaving it unset")
            state = None

        parts = []
        for raw in raw_parts:
            if raw.get("id") is None:
                logger.debug(f"Conversation {conversation_id}: skipping part without id")
                continue
            author = _author_fields(raw.get("author"))
            body = raw.get("body")
            parts.append(
                ThreadPart(
                    id=raw["id"],
                    kind=raw.get("part_type") or "unknown",
                    body_raw=body,
                    body_clean=clean(body) if body else None,
                    created_at=raw.get("created_at") or 0,
                    author_type=author["type"],
                    author_id=author["id"],
                    author_name=author["name"],
                    author_email=author["email"],
                )
            )
        parts.sort(key=lambda p: p.created_at)

        notes = [_to_entry(p, reviewer_a_id, reviewer_b_email) for p in parts if p.kind == "note"]
        admin_responses = [
            _to_entry(p, reviewer_a_id, reviewer_b_email)
            for p in parts
            if p.kind == "comment" and p.author_type == "admin"
        ]
        user_messages = [
            _to_entry(p, reviewer_a_id, reviewer_b_email, flag_reviewers=False)
            for p in parts
            if p.kind == "comment" and p.author_type == "user"
        ]

        return ConversationThread(
            conversation_id=conversation_id,
            state=state,
            created_at=detail.get("created_at"),
            updated_at=detail.get("updated_at"),
            user=_resolve_user(detail),
            initial_message=initial_message,
            parts=parts,
            notes=notes,
            admin_responses=admin_responses,
            user_messages=user_messages,
            totals=ThreadTotals(
                parts=len(raw_parts),
                comments=part_kinds.count("comment"),
                notes=part_kinds.count("note"),
            ),
            admin_assignee_id=detail.get("admin_assignee_id"),
        )
    except (ValidationError, AttributeError, TypeError) as e:
        raise ThreadBuildError(conversation_id, f"unexpected payload shape: {e}") from e


def summarize_threads(threads: Iterable[ConversationThread]) -> ThreadStats:
    """Aggregate note, response and reviewer counts across threads."""
    threads = list(threads)
    stats = ThreadStats(total_threads=len(threads))
    if not threads:
        return stats

    total_parts = 0
    for thread in threads:
        total_parts += thread.totals.parts
        if thread.notes:
            stats.threads_with_notes += 1
        stats.total_notes += len(thread.notes)
        stats.total_admin_responses += len(thread.admin_responses)
        stats.total_user_messages += len(thread.user_messages)
        stats.reviewer_a_notes += sum(1 for n in thread.notes if n.is_from_designated_reviewer_a)
        stats.reviewer_b_notes += sum(1 for n in thread.notes if n.is_from_designated_reviewer_b)
        stats.reviewer_a_responses += sum(
            1 for r in thread.admin_responses if r.is_from_designated_reviewer_a
        )
        stats.reviewer_b_responses += sum(
            1 for r in thread.admin_responses if r.is_from_designated_reviewer_b
        )

    stats.average_parts_per_thread = round(total_parts / len(threads), 2)
    return stats


class ThreadService:
    """Fetches conversation details and materializes them into threads."""

    def __init__(
        self,
        client: IntercomClient,
        reviewer_a_id: Optional[str] = None,
        reviewer_b_email: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY,
        clean: Callable[[str], str] = clean_conversation_message,
    ):
        self.client = client
        self.reviewer_a_id = reviewer_a_id
        self.reviewer_b_email = reviewer_b_email
        self.batch_size = batch_size
        self.inter_batch_delay = inter_batch_delay
        self.clean = clean

    @classmethod
    def from_config(cls, client: IntercomClient, config: MirrorConfig) -> "ThreadService":
        return cls(
            client,
            reviewer_a_id=config.reviewer_a_admin_id,
            reviewer_b_email=config.reviewer_b_email,
            batch_size=config.thread_batch_size,
            inter_batch_delay=config.thread_batch_delay_seconds,
        )

    def build_from_detail(self, detail: dict) -> ConversationThread:
        return build_conversation_thread(detail, self.reviewer_a_id, self.reviewer_b_email, self.clean)

    async def build_thread(
        self,
        conversation_id: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> ConversationThread:
        """
        Fetch one conversation and materialize it.

        Raises:
            ThreadBuildError: if the fetch fails or the payload is unusable
        """
        conversation_id = str(conversation_id)
        try:
            detail = await self.client.get_conversation_async(conversation_id, session=session)
        except FetchError as e:
            raise ThreadBuildError(conversation_id, str(e)) from e
        return self.build_from_detail(detail)

    async def build_threads_batch(
        self,
        conversation_ids: Sequence[str],
        batch_size: Optional[int] = None,
        inter_batch_delay: Optional[float] = None,
    ) -> ThreadBatchResult:
        """
        Build threads for many conversations, `batch_size` at a time.

        A failed conversation is logged and skipped; the batch never raises
        for an individual failure.
        """
        batch_size = max(1, batch_size or self.batch_size)
        delay = self.inter_batch_delay if inter_batch_delay is None else inter_batch_delay
        ids = [str(cid) for cid in conversation_ids]
        result = ThreadBatchResult()
        if not ids:
            return result

        total_batches = (len(ids) + batch_size - 1) // batch_size
        logger.info(f"Building threads for {len(ids)} conversations in {total_batches} batches...")

        async with self.client.open_session() as session:
            for start in range(0, len(ids), batch_size):
                batch = ids[start:start + batch_size]
                logger.info(f"Processing batch {start // batch_size + 1}/{total_batches}...")

                outcomes = await asyncio.gather(
                    *(self.build_thread(cid, session=session) for cid in batch),
                    return_exceptions=True,
                )
                for cid, outcome in zip(batch, outcomes):
                    if isinstance(outcome, ConversationThread):
                        result.threads.append(outcome)
                    elif isinstance(outcome, Exception):
                        logger.warning(f"Skipping conversation {cid}: {outcome}")
                        result.skipped_ids.append(cid)
                    else:
                        raise outcome

                if start + batch_size < len(ids) and delay > 0:
                    await asyncio.sleep(delay)

        logger.info(f"Built {result.succeeded} threads, skipped {result.skipped}")
        return result
