"""
Tests for the reconciliation engine (no database).

Tests cover:
- Translating history entries and message rows
- Collapsing the same event recorded in both places
- Keeping genuinely different messages apart
- Orphan and visibility filtering
- Read-state resolution across duplicates
- Locating history entries by timestamp
"""

from types import SimpleNamespace

import pytest

from crm_inbox.errors import MalformedRecord
from crm_inbox.reconcile import (
    PLACEHOLDER_CONTENT,
    build_merged_view,
    find_history_entry,
    history_timestamp_matches,
    normalize_content,
    parse_reference,
    summarize,
    translate_history_entry,
    translate_message,
)

from conftest import history_entry


def lead(lead_id="E", booker_id="booker-1"):
    return SimpleNamespace(
        id=lead_id,
        name=f"Lead {lead_id}",
        phone="+447700900000",
        email=f"{lead_id.lower()}@example.com",
        status="New",
        booker_id=booker_id,
    )


def row(message_id="m1", entity_id="E", content="Hello", sent_at="2024-01-01T10:00:03Z", **fields):
    values = {
        "id": message_id,
        "entity_id": entity_id,
        "channel": "sms",
        "sent_by": None,
        "sent_by_name": None,
        "content": content,
        "sms_body": None,
        "email_body": None,
        "subject": None,
        "sent_at": sent_at,
        "created_at": sent_at,
        "read_status": None,
    }
    values.update(fields)
    return SimpleNamespace(**values)


class TestTranslation:
    """Test conversion of both sources into the common record shape."""

    def test_history_entry_fields(self):
        entry = history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="Hello", read=False)
        record = translate_history_entry("E", entry)

        assert record.channel == "sms"
        assert record.direction == "received"
        assert record.content == "Hello"
        assert record.is_read is False
        assert record.reference == "E_2024-01-01T10:00:00Z"
        assert record.action == "SMS_RECEIVED"

    def test_history_content_fallback_order(self):
        entry = {"action": "EMAIL_RECEIVED", "timestamp": "2024-01-01T10:00:00Z",
                 "details": {"message": "from message", "subject": "from subject"}}
        assert translate_history_entry("E", entry).content == "from message"

        entry["details"] = {"subject": "Quote request"}
        assert translate_history_entry("E", entry).content == "Quote request"

    def test_history_read_defaults_by_direction(self):
        sent = translate_history_entry("E", history_entry("SMS_SENT", "2024-01-01T10:00:00Z", body="Hi"))
        received = translate_history_entry("E", history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="Hi"))

        assert sent.is_read is True
        assert received.is_read is False

    def test_non_message_action_ignored(self):
        entry = history_entry("STATUS_CHANGE", "2024-01-01T10:00:00Z", body="Booked")
        assert translate_history_entry("E", entry) is None

    @pytest.mark.parametrize("entry", [
        {"action": "SMS_RECEIVED", "timestamp": "undefined", "details": {}},
        {"action": None, "timestamp": "2024-01-01T10:00:00Z"},
        {"action": "SMS_RECEIVED", "timestamp": "yesterday"},
        "not an object",
    ])
    def test_corrupt_history_entry_raises(self, entry):
        with pytest.raises(MalformedRecord):
            translate_history_entry("E", entry)

    def test_message_direction_from_sent_by(self):
        assert translate_message(row(sent_by="user-7")).direction == "sent"
        assert translate_message(row()).direction == "received"

    def test_message_prefers_sent_at_over_created_at(self):
        record = translate_message(row(sent_at="2024-01-01T10:00:00Z", created_at="2024-01-01T10:05:00Z"))
        assert record.timestamp == "2024-01-01T10:00:00Z"

    def test_message_read_defaults(self):
        assert translate_message(row(sent_by="user-7")).is_read is True
        assert translate_message(row()).is_read is False
        assert translate_message(row(read_status=True)).is_read is True

    def test_message_content_fallback(self):
        assert translate_message(row(content=None, sms_body="body text")).content == "body text"
        assert translate_message(row(content=None, subject="Subject")).content == "Subject"
        assert translate_message(row(content="   ")).content == PLACEHOLDER_CONTENT

    def test_email_body_only_row_shows_body(self):
        email = row(channel="email", content=None, subject=None, email_body="Full email text")

        assert translate_message(email).content == "Full email text"

    def test_email_subject_preferred_over_body(self):
        email = row(channel="email", content=None, subject="Quote", email_body="Full email text")

        assert translate_message(email).content == "Quote"

    def test_message_with_unknown_channel_raises(self):
        with pytest.raises(MalformedRecord):
            translate_message(row(channel="fax"))


class TestDeduplication:
    """Test collapsing of records that describe the same event."""

    def test_same_event_in_both_sources_collapses(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="Hello", read=False)]}
        view = build_merged_view([row(sent_at="2024-01-01T10:00:05Z")], history, {"E": lead()})

        assert len(view) == 1
        assert view[0].content == "Hello"

    def test_native_record_survives_with_its_id(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="Hello")]}
        view = build_merged_view([row(message_id="m-1")], history, {"E": lead()})

        assert view[0].id == "m-1"
        assert view[0].message_id == "m-1"
        assert view[0].source == "message"

    def test_tie_prefers_native_record(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:00:03Z", body="Hello")]}
        view = build_merged_view([row(message_id="m-1", sent_at="2024-01-01T10:00:03Z")], history, {"E": lead()})

        assert len(view) == 1
        assert view[0].source == "message"

    def test_latest_timestamp_wins(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:01:00Z", body="Hello")]}
        view = build_merged_view([row(sent_at="2024-01-01T10:00:30Z")], history, {"E": lead()})

        assert len(view) == 1
        assert view[0].source == "history"
        assert view[0].id == "E_2024-01-01T10:01:00Z"

    def test_whitespace_and_case_differences_collapse(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="  hello\n  THERE ")]}
        view = build_merged_view([row(content="Hello there")], history, {"E": lead()})

        assert len(view) == 1

    def test_different_content_same_bucket_kept(self):
        messages = [
            row(message_id="m1", content="Can we move my booking to Friday?", sent_at="2024-01-01T10:00:10Z"),
            row(message_id="m2", content="Actually Saturday works better", sent_at="2024-01-01T10:00:40Z"),
        ]
        view = build_merged_view(messages, {}, {"E": lead()})

        assert {m.id for m in view} == {"m1", "m2"}

    def test_content_differing_only_past_prefix_collapses(self):
        base = "x" * 160
        messages = [
            row(message_id="m1", content=base + " first tail"),
            row(message_id="m2", content=base + " second tail", sent_at="2024-01-01T10:00:04Z"),
        ]
        view = build_merged_view(messages, {}, {"E": lead()})

        assert len(view) == 1
        assert view[0].id == "m2"

    def test_different_direction_kept(self):
        messages = [row(message_id="m1"), row(message_id="m2", sent_by="user-7")]
        view = build_merged_view(messages, {}, {"E": lead()})

        assert len(view) == 2

    def test_different_channel_kept(self):
        messages = [row(message_id="m1"), row(message_id="m2", channel="email")]
        view = build_merged_view(messages, {}, {"E": lead()})

        assert len(view) == 2

    def test_different_entity_kept(self):
        messages = [row(message_id="m1", entity_id="E"), row(message_id="m2", entity_id="F")]
        view = build_merged_view(messages, {}, {"E": lead("E"), "F": lead("F")})

        assert len(view) == 2

    def test_far_apart_timestamps_kept(self):
        messages = [
            row(message_id="m1", content="Yes", sent_at="2024-01-01T10:00:00Z"),
            row(message_id="m2", content="Yes", sent_at="2024-01-01T10:30:00Z"),
        ]
        view = build_merged_view(messages, {}, {"E": lead()})

        assert len(view) == 2


class TestReadState:
    """Test that a read event never shows as unread."""

    def test_history_read_marks_merged_row_read(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="Hello", read=True)]}
        view = build_merged_view([row(read_status=False)], history, {"E": lead()})

        assert len(view) == 1
        assert view[0].source == "message"
        assert view[0].is_read is True

    def test_message_read_marks_merged_row_read(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:00:05Z", body="Hello", read=False)]}
        view = build_merged_view([row(read_status=True, sent_at="2024-01-01T10:00:01Z")], history, {"E": lead()})

        assert len(view) == 1
        assert view[0].source == "history"
        assert view[0].is_read is True

    def test_both_unread_stays_unread(self):
        history = {"E": [history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="Hello", read=False)]}
        view = build_merged_view([row(read_status=False)], history, {"E": lead()})

        assert view[0].is_read is False


class TestFiltering:
    """Test orphan exclusion, visibility and skipping of corrupt records."""

    def test_orphaned_message_excluded(self):
        messages = [row(message_id="m1", entity_id=None), row(message_id="m2", entity_id="gone")]
        view = build_merged_view(messages, {}, {"E": lead()}, visible=lambda e: True)

        assert view == []

    def test_visibility_predicate_applied(self):
        messages = [row(message_id="m1", entity_id="E"), row(message_id="m2", entity_id="F")]
        leads = {"E": lead("E", booker_id="booker-1"), "F": lead("F", booker_id="booker-2")}
        view = build_merged_view(messages, {}, leads, visible=lambda e: e.booker_id == "booker-1")

        assert [m.id for m in view] == ["m1"]

    def test_corrupt_records_skipped_not_raised(self):
        history = {"E": [
            {"action": "SMS_RECEIVED", "timestamp": "undefined"},
            "garbage",
            history_entry("BOOKED", "2024-01-01T09:00:00Z"),
            history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="Hello"),
        ]}
        messages = [row(message_id="bad", sent_at=None, created_at="not a date")]
        view = build_merged_view(messages, history, {"E": lead()})

        assert len(view) == 1
        assert view[0].content == "Hello"

    def test_entity_display_fields_joined(self):
        view = build_merged_view([row()], {}, {"E": lead()})

        assert view[0].entity_name == "Lead E"
        assert view[0].entity_email == "e@example.com"
        assert view[0].assigned_to == "booker-1"


class TestOrdering:
    """Test newest-first ordering and summary counts."""

    def test_sorted_newest_first(self):
        messages = [
            row(message_id="m1", content="first", sent_at="2024-01-01T09:00:00Z"),
            row(message_id="m3", content="third", sent_at="2024-01-03T09:00:00Z"),
            row(message_id="m2", content="second", sent_at="2024-01-02T09:00:00Z"),
        ]
        view = build_merged_view(messages, {}, {"E": lead()})

        assert [m.id for m in view] == ["m3", "m2", "m1"]

    def test_mixed_timestamp_formats_sort_by_instant(self):
        messages = [
            row(message_id="m1", content="a", sent_at="2024-01-01T12:00:00+02:00"),
            row(message_id="m2", content="b", sent_at="2024-01-01T11:00:00Z"),
        ]
        view = build_merged_view(messages, {}, {"E": lead()})

        assert [m.id for m in view] == ["m2", "m1"]

    def test_summary_counts(self):
        messages = [
            row(message_id="m1", content="a"),
            row(message_id="m2", content="b", sent_by="user-7"),
            row(message_id="m3", content="c", channel="email", read_status=True),
        ]
        stats = summarize(build_merged_view(messages, {}, {"E": lead()}))

        assert stats == {
            "total_messages": 3,
            "sms_count": 2,
            "email_count": 1,
            "unread_count": 1,
            "sent_count": 1,
            "received_count": 2,
        }


class TestHistoryLookup:
    """Test reference parsing and the timestamp comparison ladder."""

    def test_parse_reference_keeps_underscores_in_timestamp(self):
        assert parse_reference("lead-1_2024-01-01_10:00:00") == ("lead-1", "2024-01-01_10:00:00")

    @pytest.mark.parametrize("reference", ["", "no-separator", "_2024-01-01T10:00:00Z", "lead-1_"])
    def test_parse_reference_rejects_malformed(self, reference):
        assert parse_reference(reference) is None

    def test_exact_match_ignores_z_suffix(self):
        assert history_timestamp_matches("2024-01-01T10:00:00.000Z", "2024-01-01T10:00:00.000")

    def test_match_within_tolerance(self):
        assert history_timestamp_matches("2024-01-01T10:00:00Z", "2024-01-01T10:00:09Z")
        assert not history_timestamp_matches("2024-01-01T10:00:00Z", "2024-01-01T10:00:11Z")

    def test_match_across_offsets(self):
        assert history_timestamp_matches("2024-01-01T10:00:00.000Z", "2024-01-01T11:00:00+01:00", tolerance_ms=0)

    def test_undefined_entry_timestamp_never_matches(self):
        assert not history_timestamp_matches("undefined", "2024-01-01T10:00:00Z")
        assert not history_timestamp_matches(None, "2024-01-01T10:00:00Z")

    def test_find_skips_sent_entries(self):
        history = [
            history_entry("SMS_SENT", "2024-01-01T10:00:00Z", body="Out"),
            history_entry("SMS_RECEIVED", "2024-01-01T10:00:02Z", body="In"),
        ]
        assert find_history_entry(history, "2024-01-01T10:00:00Z") == 1

    def test_find_returns_none_without_match(self):
        history = [history_entry("SMS_RECEIVED", "2024-01-01T10:00:00Z", body="In")]
        assert find_history_entry(history, "2024-02-01T10:00:00Z") is None

    def test_normalize_content(self):
        assert normalize_content("  Hello\t\tWORLD \n") == "hello world"
        assert normalize_content(None) == ""
