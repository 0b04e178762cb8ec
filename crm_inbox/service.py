"""
Inbox operations: build the merged view, mark read, bulk read, bulk delete.

Each operation loads what it needs through the storage functions, applies
the reconciliation rules in reconcile.py, writes back, and publishes one
notification. The messages table and booking_history are written as two
independent steps; no transaction spans both.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from crm_inbox import storage
from crm_inbox.config import settings
from crm_inbox.errors import Forbidden, InboxError, MalformedRecord, NotFound, StoreUnavailable
from crm_inbox.metrics import record_delete, record_read_update
from crm_inbox.notifications import Broadcaster, EventType
from crm_inbox.reconcile import (
    CHANNELS,
    MESSAGE_ACTIONS,
    RECEIVED_ACTIONS,
    SOURCE_HISTORY,
    SOURCE_MESSAGE,
    build_merged_view,
    dedup_key,
    find_history_entry,
    history_entry_content,
    history_timestamp_matches,
    normalize_content,
    parse_reference,
    summarize,
    translate_history_entry,
    translate_message,
)
from crm_inbox.schemas import ReferenceResult, WebhookRequest
from crm_inbox.utils import utc_now_iso

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 100


@dataclass
class Caller:
    """Who is asking, as asserted by the upstream gateway."""

    user_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class ReadResult:
    reference: str
    entity_id: Optional[str]
    source: str
    content: str


def _snippet(content: Optional[str]) -> str:
    text = content or "Message"
    if len(text) > SNIPPET_LENGTH:
        return text[:SNIPPET_LENGTH] + "..."
    return text


def visibility_for(caller: Caller) -> Callable[[object], bool]:
    """Admins see every lead; everyone else only the leads booked to them."""
    if caller.is_admin:
        return lambda lead: True
    return lambda lead: caller.user_id is not None and lead.booker_id == caller.user_id


# =============================================================================
# Merged view
# =============================================================================

def list_inbox(db: Session, caller: Caller, entity_id: Optional[str] = None):
    """
    Merged, de-duplicated inbox for the caller.

    Store failures propagate; a partial view is never returned.

    Returns:
        Tuple of (list of DisplayMessage, stats dict)
    """
    if entity_id is not None:
        rows = storage.list_messages(db, entity_ids=[entity_id])
        leads = storage.list_entities(db, ids=[entity_id])
    else:
        rows = storage.list_messages(db)
        leads = storage.list_entities(db)

    entities = {lead.id: lead for lead in leads}
    histories = {lead.id: storage.decode_history(lead) for lead in leads}

    view = build_merged_view(rows, histories, entities, visible=visibility_for(caller))
    logger.info(
        f"Built inbox of {len(view)} messages from {len(rows)} rows and {len(leads)} leads",
        extra={"user_id": caller.user_id, "entity_id": entity_id},
    )
    return view, summarize(view)


# =============================================================================
# Read state
# =============================================================================

def _mark_history_read(db: Session, reference: str) -> ReadResult:
    parsed = parse_reference(reference)
    if parsed is None:
        raise NotFound(f"Message {reference} not found; the inbox may be stale")
    entity_id, timestamp = parsed

    history = storage.get_entity_history(db, entity_id)
    if history is None:
        raise NotFound(f"Lead {entity_id} not found")

    index = find_history_entry(history, timestamp, actions=RECEIVED_ACTIONS)
    if index is None:
        raise NotFound(f"Message {reference} not found in lead history; the inbox may be stale")

    entry = history[index]
    details = entry.get("details")
    if not isinstance(details, Mapping):
        details = {}
        entry["details"] = details
    details["read"] = True

    if not storage.put_entity_history(db, entity_id, history):
        raise NotFound(f"Lead {entity_id} not found")

    return ReadResult(
        reference=reference,
        entity_id=entity_id,
        source=SOURCE_HISTORY,
        content=_snippet(history_entry_content(entry)),
    )


def _resolve_read(db: Session, reference: str) -> ReadResult:
    message = storage.get_message(db, reference)
    if message is not None:
        if not storage.update_message(db, message.id, read_status=True, read_at=utc_now_iso()):
            raise NotFound(f"Message {reference} was deleted")
        record_read_update(SOURCE_MESSAGE, "updated")
        return ReadResult(
            reference=reference,
            entity_id=message.entity_id,
            source=SOURCE_MESSAGE,
            content=_snippet(message.content or message.sms_body or message.subject or message.email_body),
        )

    try:
        result = _mark_history_read(db, reference)
    except NotFound:
        record_read_update(SOURCE_HISTORY, "not_found")
        raise
    record_read_update(SOURCE_HISTORY, "updated")
    return result


def mark_read(db: Session, reference: str, broadcaster: Optional[Broadcaster] = None) -> ReadResult:
    """
    Mark one inbox row read.

    The reference is tried as a messages-table id first, then as an
    ``{entity_id}_{timestamp}`` pointer into the lead's booking_history.
    Marking an already-read row succeeds again.

    Raises:
        NotFound: neither representation has the row
        StoreUnavailable: a store call failed
    """
    try:
        result = _resolve_read(db, reference)
    except NotFound as e:
        logger.info(f"Mark read on unknown reference: {e}")
        raise

    logger.info(f"Marked {result.source} message read", extra={"reference": reference})
    if broadcaster is not None:
        broadcaster.publish(EventType.MESSAGE_READ, {
            "reference": result.reference,
            "entity_id": result.entity_id,
            "content": result.content,
        })
    return result


def mark_many_read(db: Session, references: list, broadcaster: Optional[Broadcaster] = None) -> list:
    """
    Mark each reference read independently; one failure never stops the rest.

    Returns:
        list of ReferenceResult, in request order
    """
    results = []
    updated = []
    for reference in references:
        try:
            read = _resolve_read(db, reference)
        except InboxError as e:
            if isinstance(e, StoreUnavailable):
                record_read_update("unknown", "error")
            results.append(ReferenceResult(reference=reference, success=False, error=str(e)))
            continue
        except Exception as e:
            logger.exception(f"Unexpected error marking {reference} read")
            record_read_update("unknown", "error")
            results.append(ReferenceResult(reference=reference, success=False, error=str(e)))
            continue
        results.append(ReferenceResult(reference=reference, success=True))
        updated.append(read)

    logger.info(f"Bulk read: {len(updated)}/{len(references)} references updated")
    if updated and broadcaster is not None:
        broadcaster.publish(EventType.MESSAGES_READ, {
            "messages": [
                {"reference": r.reference, "entity_id": r.entity_id, "content": r.content}
                for r in updated
            ],
        })
    return results


# =============================================================================
# Deletion
# =============================================================================

def _merge_key(record) -> tuple:
    return dedup_key(record, settings.DEDUP_WINDOW_SECONDS * 1000, settings.CONTENT_PREFIX_LENGTH)


def _native_merge_key(message) -> Optional[tuple]:
    """Dedup key the merged view files this row under, None if it is unplaceable."""
    try:
        return _merge_key(translate_message(message))
    except MalformedRecord:
        return None


def _same_event(entity_id: str, entry, merge_key: Optional[tuple]) -> bool:
    if merge_key is None:
        return False
    try:
        record = translate_history_entry(entity_id, entry)
    except MalformedRecord:
        return False
    return record is not None and _merge_key(record) == merge_key


def _remove_history_entries(
    db: Session,
    entity_id: str,
    timestamp: str,
    content: Optional[str],
    merge_key: Optional[tuple] = None,
) -> Optional[tuple]:
    """
    Drop the history entries for one event and persist the list.

    An entry goes if it matches the timestamp and, when known, the normalized
    content. With a merge_key, entries the merged view would collapse into the
    same row go as well, however far apart inside the dedup window. Without
    content or key, the first timestamp match defines the content, so
    duplicated legacy entries for the same event go with it.

    Returns:
        (channel, content) of the removed event, or None if nothing matched
    """
    history = storage.get_entity_history(db, entity_id)
    if not history:
        return None

    prefix = settings.CONTENT_PREFIX_LENGTH
    if content is None and merge_key is None:
        first = find_history_entry(history, timestamp, actions=MESSAGE_ACTIONS)
        if first is None:
            return None
        content = history_entry_content(history[first])

    wanted = normalize_content(content)[:prefix] if content else None
    # A content-less native row is only tied to history through its merge key
    match_by_time = wanted is not None or merge_key is None
    kept = []
    removed = []
    for entry in history:
        if _same_event(entity_id, entry, merge_key) or (
            match_by_time
            and isinstance(entry, Mapping)
            and entry.get("action") in MESSAGE_ACTIONS
            and history_timestamp_matches(entry.get("timestamp"), timestamp)
            and (wanted is None or normalize_content(history_entry_content(entry))[:prefix] == wanted)
        ):
            removed.append(entry)
            continue
        kept.append(entry)

    if not removed:
        return None
    storage.put_entity_history(db, entity_id, kept)
    channel = MESSAGE_ACTIONS[removed[0]["action"]][0]
    return channel, content or history_entry_content(removed[0])


def _delete_reference(db: Session, reference: str) -> bool:
    """
    Remove one event from both representations, best-effort.

    Both steps always run; the first store failure is raised afterwards.
    Returns whether anything was removed.
    """
    failures = []
    removed_any = False

    entity_id = timestamp = channel = content = merge_key = None
    message = None
    try:
        message = storage.get_message(db, reference)
    except StoreUnavailable as e:
        failures.append(e)

    if message is not None:
        entity_id = message.entity_id
        timestamp = message.sent_at or message.created_at
        channel = message.channel if message.channel in CHANNELS else None
        content = message.content or message.sms_body or message.subject or message.email_body
        merge_key = _native_merge_key(message)
    else:
        parsed = parse_reference(reference)
        if parsed is not None:
            entity_id, timestamp = parsed

    if entity_id and timestamp:
        try:
            matched = _remove_history_entries(db, entity_id, timestamp, content, merge_key)
        except StoreUnavailable as e:
            failures.append(e)
        else:
            if matched is not None:
                removed_any = True
                channel = channel or matched[0]
                content = content or matched[1]

    try:
        if message is not None:
            removed_any = storage.delete_messages(db, ids=[message.id]) > 0 or removed_any
        # Without content an entity+channel delete would wipe the whole thread
        if entity_id and content:
            removed_any = storage.delete_messages(
                db, entity_id=entity_id, channel=channel, content=content
            ) > 0 or removed_any
    except StoreUnavailable as e:
        failures.append(e)

    if failures:
        raise failures[0]
    return removed_any


def bulk_delete(db: Session, references: list, broadcaster: Optional[Broadcaster] = None):
    """
    Delete events from booking_history and the messages table.

    References whose records are already gone still count as deleted.

    Returns:
        Tuple of (deleted count, list of ReferenceResult)
    """
    results = []
    for reference in references:
        try:
            removed = _delete_reference(db, reference)
        except InboxError as e:
            record_delete("error")
            results.append(ReferenceResult(reference=reference, success=False, error=str(e)))
            continue
        except Exception as e:
            logger.exception(f"Unexpected error deleting {reference}")
            record_delete("error")
            results.append(ReferenceResult(reference=reference, success=False, error=str(e)))
            continue
        if not removed:
            logger.info(f"Nothing left to delete for {reference}")
        record_delete("deleted")
        results.append(ReferenceResult(reference=reference, success=True))

    deleted = [r.reference for r in results if r.success]
    logger.info(f"Bulk delete: {len(deleted)}/{len(references)} references removed")
    if deleted and broadcaster is not None:
        broadcaster.publish(EventType.MESSAGES_DELETED, {"message_ids": deleted})
    return len(deleted), results


def cleanup_orphaned(db: Session, caller: Caller, broadcaster: Optional[Broadcaster] = None) -> dict:
    """
    Delete message rows whose lead is missing. Admin only.

    Orphans are hidden from every inbox view but kept until this runs.
    """
    if not caller.is_admin:
        raise Forbidden("Access denied. Admin role required.")

    total = storage.count_messages(db)
    orphan_ids = storage.list_orphaned_message_ids(db)

    deleted = 0
    batch_size = settings.CLEANUP_BATCH_SIZE
    for start in range(0, len(orphan_ids), batch_size):
        deleted += storage.delete_messages(db, ids=orphan_ids[start:start + batch_size])

    logger.info(f"Orphan cleanup removed {deleted} of {total} messages", extra={"user_id": caller.user_id})
    if broadcaster is not None:
        broadcaster.publish(EventType.MESSAGES_DELETED, {"cleanup": True, "deleted_count": deleted})
    return {
        "total_messages": total,
        "orphaned_messages": len(orphan_ids),
        "deleted_count": deleted,
    }


# =============================================================================
# Ingest
# =============================================================================

def ingest_message(db: Session, payload: WebhookRequest, broadcaster: Optional[Broadcaster] = None):
    """
    Store a message handed over by the transport layer.

    Redelivery of the same provider message is absorbed by the unique key on
    (channel, provider_message_id).

    Returns:
        Tuple of (success: bool, is_duplicate: bool)
    """
    fields = payload.model_dump()
    success, is_duplicate = storage.create_message(db, **fields)

    if success and not is_duplicate and broadcaster is not None:
        broadcaster.publish(EventType.MESSAGE_NEW, {
            "provider_message_id": payload.provider_message_id,
            "entity_id": payload.entity_id,
            "channel": payload.channel,
            "direction": "sent" if payload.sent_by else "received",
            "content": _snippet(payload.content or payload.subject or payload.email_body),
        })
    return success, is_duplicate
