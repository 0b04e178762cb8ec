"""
Merge the two stored representations of lead communications into one inbox.

Messages about a lead live in the flat ``messages`` table and, for older
activity, in the lead's embedded ``booking_history`` list. Both can describe
the same SMS or email with slightly different timestamps and formatting.
This module turns both into a common record shape, collapses records that
describe the same event, and resolves a single read flag per event.

Nothing here touches the database; see service.py for the operations that
load and persist records.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional

from crm_inbox.config import settings
from crm_inbox.errors import MalformedRecord
from crm_inbox.metrics import record_collapsed, record_skipped
from crm_inbox.schemas import DisplayMessage
from crm_inbox.utils import parse_timestamp, to_epoch_ms, to_iso

logger = logging.getLogger(__name__)

MESSAGE_ACTIONS = {
    "SMS_RECEIVED": ("sms", "received"),
    "SMS_SENT": ("sms", "sent"),
    "EMAIL_RECEIVED": ("email", "received"),
    "EMAIL_SENT": ("email", "sent"),
}
RECEIVED_ACTIONS = frozenset({"SMS_RECEIVED", "EMAIL_RECEIVED"})
CHANNELS = frozenset({"sms", "email"})

PLACEHOLDER_CONTENT = "No content"

SOURCE_MESSAGE = "message"
SOURCE_HISTORY = "history"


@dataclass
class MessageRecord:
    """A communication event in the common shape, from either source."""

    entity_id: Optional[str]
    channel: str
    direction: str
    content: str
    timestamp: str
    moment: datetime
    is_read: bool
    source: str
    message_id: Optional[str] = None
    performed_by: Optional[str] = None
    performed_by_name: Optional[str] = None

    @property
    def reference(self) -> str:
        """Identifier a client sends back to mark this record read or delete it."""
        if self.message_id:
            return self.message_id
        return f"{self.entity_id}_{self.timestamp}"

    @property
    def action(self) -> str:
        return f"{self.channel.upper()}_{self.direction.upper()}"


def _first_text(*candidates) -> str:
    for value in candidates:
        if value is None:
            continue
        text = value if isinstance(value, str) else str(value)
        if text.strip():
            return text
    return PLACEHOLDER_CONTENT


def normalize_content(content: Optional[str]) -> str:
    """Lowercase and collapse all whitespace runs to single spaces."""
    return " ".join(str(content or "").split()).lower()


def translate_history_entry(entity_id: str, entry) -> Optional[MessageRecord]:
    """
    Convert one booking_history entry into a MessageRecord.

    Returns None for entries that are not SMS/email events (status changes,
    bookings, notes). Raises MalformedRecord for structurally corrupt entries.
    """
    if not isinstance(entry, Mapping):
        raise MalformedRecord(f"history entry for {entity_id} is not an object")

    action = entry.get("action")
    raw_ts = entry.get("timestamp")
    if not action or action == "undefined" or not raw_ts or raw_ts == "undefined":
        raise MalformedRecord(f"history entry for {entity_id} has no action or timestamp")

    if action not in MESSAGE_ACTIONS:
        return None

    moment = parse_timestamp(raw_ts)
    if moment is None:
        raise MalformedRecord(f"history entry for {entity_id} has unparseable timestamp {raw_ts!r}")

    channel, direction = MESSAGE_ACTIONS[action]
    details = entry.get("details")
    if not isinstance(details, Mapping):
        details = {}

    if "read" in details and details["read"] is not None:
        is_read = bool(details["read"])
    else:
        is_read = direction == "sent"

    return MessageRecord(
        entity_id=entity_id,
        channel=channel,
        direction=direction,
        content=_first_text(details.get("body"), details.get("message"), details.get("subject")),
        timestamp=str(raw_ts),
        moment=moment,
        is_read=is_read,
        source=SOURCE_HISTORY,
        performed_by=entry.get("performed_by"),
        performed_by_name=entry.get("performed_by_name"),
    )


def translate_message(row) -> MessageRecord:
    """
    Convert a messages-table row into a MessageRecord.

    The event time is sent_at when present; created_at only records when the
    row was written. Raises MalformedRecord for rows that cannot be placed.
    """
    if row.channel not in CHANNELS:
        raise MalformedRecord(f"message {row.id} has unknown channel {row.channel!r}")

    raw_ts = row.sent_at or row.created_at
    moment = parse_timestamp(raw_ts)
    if moment is None:
        raise MalformedRecord(f"message {row.id} has unparseable timestamp {raw_ts!r}")

    direction = "sent" if row.sent_by else "received"
    is_read = row.read_status if row.read_status is not None else direction == "sent"

    return MessageRecord(
        entity_id=row.entity_id,
        channel=row.channel,
        direction=direction,
        content=_first_text(row.content, row.sms_body, row.subject, row.email_body),
        timestamp=str(raw_ts),
        moment=moment,
        is_read=bool(is_read),
        source=SOURCE_MESSAGE,
        message_id=row.id,
        performed_by=row.sent_by,
        performed_by_name=row.sent_by_name,
    )


def dedup_key(record: MessageRecord, window_ms: int, prefix_length: int) -> tuple:
    return (
        record.entity_id,
        record.channel,
        record.direction,
        to_epoch_ms(record.moment) // window_ms,
        normalize_content(record.content)[:prefix_length],
    )


def _prefer(candidate: MessageRecord, current: MessageRecord) -> bool:
    """Whether candidate should replace current as the bucket's surviving record."""
    if candidate.moment != current.moment:
        return candidate.moment > current.moment
    return candidate.source == SOURCE_MESSAGE and current.source != SOURCE_MESSAGE


def deduplicate(
    records: Iterable[MessageRecord],
    window_seconds: Optional[int] = None,
    prefix_length: Optional[int] = None,
) -> list:
    """
    Collapse records describing the same event.

    Records sharing entity, channel, direction, time bucket and normalized
    content prefix collapse to the latest one (native rows win ties). The
    survivor is read if any collapsed record was read.
    """
    window_ms = (window_seconds or settings.DEDUP_WINDOW_SECONDS) * 1000
    prefix_length = prefix_length or settings.CONTENT_PREFIX_LENGTH

    buckets: dict = {}
    read_keys = set()
    collapsed = 0
    for record in records:
        key = dedup_key(record, window_ms, prefix_length)
        if record.is_read:
            read_keys.add(key)
        current = buckets.get(key)
        if current is None:
            buckets[key] = record
            continue
        collapsed += 1
        if _prefer(record, current):
            buckets[key] = record

    if collapsed:
        record_collapsed(collapsed)
        logger.debug(f"Collapsed {collapsed} duplicate records")

    survivors = []
    for key, record in buckets.items():
        record.is_read = record.is_read or key in read_keys
        survivors.append(record)
    return survivors


def _to_display(record: MessageRecord, entity) -> DisplayMessage:
    return DisplayMessage(
        id=record.reference,
        message_id=record.message_id,
        entity_id=record.entity_id,
        entity_name=getattr(entity, "name", None),
        entity_phone=getattr(entity, "phone", None),
        entity_email=getattr(entity, "email", None),
        entity_status=getattr(entity, "status", None),
        assigned_to=getattr(entity, "booker_id", None),
        channel=record.channel,
        direction=record.direction,
        action=record.action,
        content=record.content,
        timestamp=record.timestamp,
        performed_by=record.performed_by,
        performed_by_name=record.performed_by_name,
        is_read=record.is_read,
        source=record.source,
    )


def collect_records(messages: Iterable, histories_by_entity: Mapping[str, list]) -> list:
    """Translate both sources, skipping and logging anything unusable."""
    records = []

    for entity_id, history in histories_by_entity.items():
        for entry in history or []:
            try:
                record = translate_history_entry(entity_id, entry)
            except MalformedRecord as e:
                logger.warning(f"Skipping history entry: {e}", extra={"entity_id": entity_id})
                record_skipped("malformed")
                continue
            if record is None:
                continue
            records.append(record)

    for row in messages:
        try:
            records.append(translate_message(row))
        except MalformedRecord as e:
            logger.warning(f"Skipping message row: {e}")
            record_skipped("malformed")

    return records


def build_merged_view(
    messages: Iterable,
    histories_by_entity: Mapping[str, list],
    entities: Mapping[str, object],
    visible: Optional[Callable[[object], bool]] = None,
    window_seconds: Optional[int] = None,
    prefix_length: Optional[int] = None,
) -> list:
    """
    Build the de-duplicated inbox view, newest first.

    Args:
        messages: messages-table rows
        histories_by_entity: decoded booking_history lists keyed by lead id
        entities: leads keyed by id, for display fields and visibility
        visible: predicate on a lead; records of leads failing it are dropped
        window_seconds: dedup time bucket, defaults to DEDUP_WINDOW_SECONDS
        prefix_length: compared content length, defaults to CONTENT_PREFIX_LENGTH

    Returns:
        list of DisplayMessage
    """
    scoped = []
    for record in collect_records(messages, histories_by_entity):
        entity = entities.get(record.entity_id) if record.entity_id else None
        if entity is None:
            record_skipped("orphaned")
            continue
        if visible is not None and not visible(entity):
            record_skipped("not_visible")
            continue
        scoped.append(record)

    merged = deduplicate(scoped, window_seconds=window_seconds, prefix_length=prefix_length)
    merged.sort(key=lambda r: (r.moment, r.source == SOURCE_MESSAGE, r.reference), reverse=True)

    return [_to_display(record, entities[record.entity_id]) for record in merged]


def summarize(view: list) -> dict:
    return {
        "total_messages": len(view),
        "sms_count": sum(1 for m in view if m.channel == "sms"),
        "email_count": sum(1 for m in view if m.channel == "email"),
        "unread_count": sum(1 for m in view if not m.is_read),
        "sent_count": sum(1 for m in view if m.direction == "sent"),
        "received_count": sum(1 for m in view if m.direction == "received"),
    }


# =============================================================================
# Locating legacy history entries
# =============================================================================

def parse_reference(reference: str) -> Optional[tuple]:
    """
    Split an ``{entity_id}_{timestamp}`` reference.

    The timestamp may itself contain underscores, so only the first one splits.
    """
    if not reference or "_" not in reference:
        return None
    entity_id, timestamp = reference.split("_", 1)
    if not entity_id or not timestamp:
        return None
    return entity_id, timestamp


def history_timestamp_matches(entry_ts, target_ts: str, tolerance_ms: Optional[int] = None) -> bool:
    """
    Compare a stored history timestamp to a client-supplied one.

    Tried in order: exact match ignoring a trailing Z, instants within
    tolerance_ms of each other, then the target rendered as ISO-8601.
    """
    if not entry_ts or entry_ts == "undefined" or not target_ts:
        return False
    entry_text = str(entry_ts)
    if entry_text.rstrip("Z") == target_ts.rstrip("Z"):
        return True

    tolerance = settings.HISTORY_MATCH_TOLERANCE_MS if tolerance_ms is None else tolerance_ms
    entry_moment = parse_timestamp(entry_text)
    target_moment = parse_timestamp(target_ts)
    if entry_moment is not None and target_moment is not None:
        if abs(to_epoch_ms(entry_moment) - to_epoch_ms(target_moment)) <= tolerance:
            return True

    if target_moment is not None:
        return entry_text == to_iso(target_moment)
    return False


def find_history_entry(
    history: list,
    target_ts: str,
    actions: Iterable[str] = RECEIVED_ACTIONS,
    tolerance_ms: Optional[int] = None,
) -> Optional[int]:
    """Index of the first message entry with one of actions at target_ts."""
    actions = frozenset(actions)
    for index, entry in enumerate(history):
        if not isinstance(entry, Mapping) or entry.get("action") not in actions:
            continue
        if history_timestamp_matches(entry.get("timestamp"), target_ts, tolerance_ms):
            return index
    return None


def history_entry_content(entry: Mapping) -> Optional[str]:
    details = entry.get("details")
    if not isinstance(details, Mapping):
        return None
    for field in ("body", "message", "subject"):
        value = details.get(field)
        if value:
            return str(value)
    return None
