"""Tests for RoomStateReconciler.

Covers:
* ordering and duplicate delivery of remote inserts
* delete cascade through reactions, read receipts and pins
* optimistic placeholder commit / discard via handles
* reaction, pin and read-receipt idempotence
* typing entries and presence sync
* history (re)load keeping placeholders
* ordering and uniqueness across random insert/delete/send sequences
"""
import random
from datetime import datetime, timezone

import pytest

from chatsync.room.models import Draft, PinAction, ReactionAction, SendState

ROOM_ID = "room-1"


def _draft(content="hello", sender_id="me"):
    return Draft(room_id=ROOM_ID, sender_id=sender_id, content=content)


def _now():
    return datetime(2024, 3, 1, 13, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Message log
# ---------------------------------------------------------------------------


class TestRemoteInsert:
    def test_inserts_in_timestamp_order(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("b", minutes=2))
        reconciler.apply_remote_insert(make_message("a", minutes=1))
        reconciler.apply_remote_insert(make_message("c", minutes=3))
        assert [m.id for m in reconciler.messages] == ["a", "b", "c"]

    def test_equal_timestamps_order_by_id(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("y"))
        reconciler.apply_remote_insert(make_message("x"))
        assert [m.id for m in reconciler.messages] == ["x", "y"]

    def test_duplicate_delivery_is_a_no_op(self, reconciler, make_message):
        msg = make_message("a")
        assert reconciler.apply_remote_insert(msg) is True
        version = reconciler.version
        assert reconciler.apply_remote_insert(msg) is False
        assert len(reconciler.messages) == 1
        assert reconciler.version == version

    def test_same_id_with_new_content_replaces(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("a", content="old"))
        reconciler.apply_remote_insert(make_message("a", content="new"))
        assert [m.content for m in reconciler.messages] == ["new"]

    def test_message_clears_sender_typing(self, reconciler, make_message):
        reconciler.apply_typing_start("bob", "Bob", expires_at=100.0)
        reconciler.apply_remote_insert(make_message("a", sender_id="bob"))
        assert reconciler.typing_users() == {}

    def test_remote_insert_lands_before_placeholders(self, reconciler, make_message):
        reconciler.apply_optimistic_insert(_draft(), _now())
        reconciler.apply_remote_insert(make_message("late", minutes=500))
        messages = reconciler.messages
        assert messages[0].id == "late"
        assert messages[-1].pending is True


class TestRemoteDelete:
    def test_cascades_to_every_index(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("a", sender_id="me"))
        reconciler.apply_reaction_event("a", "heart", "bob", ReactionAction.ADD)
        reconciler.apply_pin_event("a", PinAction.PIN)
        reconciler.apply_read_receipt("bob", "a")

        assert reconciler.apply_remote_delete("a") is True

        snap = reconciler.snapshot()
        assert snap.messages == []
        assert snap.reactions == {}
        assert snap.read_receipts == {}
        assert snap.pinned == set()

    def test_unknown_id_is_a_no_op(self, reconciler):
        version = reconciler.version
        assert reconciler.apply_remote_delete("missing") is False
        assert reconciler.version == version

    def test_delete_then_reinsert_has_fresh_indices(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("a"))
        reconciler.apply_reaction_event("a", "heart", "bob", ReactionAction.ADD)
        reconciler.apply_remote_delete("a")
        reconciler.apply_remote_insert(make_message("a"))
        assert reconciler.snapshot().reactions == {}


# ---------------------------------------------------------------------------
# Optimistic handles
# ---------------------------------------------------------------------------


class TestOptimistic:
    def test_placeholder_is_pending_with_local_id(self, reconciler):
        handle = reconciler.apply_optimistic_insert(_draft(), _now())
        placeholder = reconciler.messages[-1]
        assert placeholder.pending is True
        assert placeholder.id.startswith("local-")
        assert handle.state is SendState.PENDING_REMOTE

    def test_commit_swaps_placeholder_for_record(self, reconciler, make_message):
        handle = reconciler.apply_optimistic_insert(_draft(), _now())
        record = make_message("srv-1", sender_id="me", content="hello")

        assert reconciler.commit_optimistic(handle, record) is True

        assert [m.id for m in reconciler.messages] == ["srv-1"]
        assert handle.state is SendState.COMMITTED
        assert handle.committed_id == "srv-1"

    def test_commit_after_change_feed_delivered_record(self, reconciler, make_message):
        handle = reconciler.apply_optimistic_insert(_draft(), _now())
        record = make_message("srv-1", sender_id="me", content="hello")
        reconciler.apply_remote_insert(record)

        reconciler.commit_optimistic(handle, record)

        assert [m.id for m in reconciler.messages] == ["srv-1"]

    def test_discard_removes_placeholder(self, reconciler):
        handle = reconciler.apply_optimistic_insert(_draft(), _now())
        assert reconciler.discard_optimistic(handle) is True
        assert reconciler.messages == []
        assert handle.state is SendState.DRAFTING

    def test_handle_resolves_only_once(self, reconciler, make_message):
        handle = reconciler.apply_optimistic_insert(_draft(), _now())
        reconciler.commit_optimistic(handle, make_message("srv-1", sender_id="me"))
        assert reconciler.discard_optimistic(handle) is False
        assert reconciler.commit_optimistic(handle, make_message("srv-2", sender_id="me")) is False
        assert [m.id for m in reconciler.messages] == ["srv-1"]

    def test_remote_delete_marks_committed_handle_removed(self, reconciler, make_message):
        handle = reconciler.apply_optimistic_insert(_draft(), _now())
        reconciler.commit_optimistic(handle, make_message("srv-1", sender_id="me"))
        reconciler.apply_remote_delete("srv-1")
        assert handle.state is SendState.REMOVED

    def test_two_identical_drafts_resolve_independently(self, reconciler, make_message):
        first = reconciler.apply_optimistic_insert(_draft("same"), _now())
        second = reconciler.apply_optimistic_insert(_draft("same"), _now())

        reconciler.commit_optimistic(second, make_message("srv-2", sender_id="me", content="same"))

        messages = reconciler.messages
        assert [m.id for m in messages] == ["srv-2", first.local_id]
        assert messages[-1].pending is True


# ---------------------------------------------------------------------------
# Broadcast-derived state
# ---------------------------------------------------------------------------


class TestReactions:
    def test_two_reactors_share_one_key(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m"))
        reconciler.apply_reaction_event("m", "heart", "u1", ReactionAction.ADD)
        reconciler.apply_reaction_event("m", "heart", "u2", ReactionAction.ADD)
        assert reconciler.snapshot().reactions["m"]["heart"] == {"u1", "u2"}

    def test_add_is_idempotent(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m"))
        assert reconciler.apply_reaction_event("m", "heart", "u1", ReactionAction.ADD) is True
        assert reconciler.apply_reaction_event("m", "heart", "u1", ReactionAction.ADD) is False
        assert reconciler.snapshot().reactions["m"]["heart"] == {"u1"}

    def test_remove_prunes_empty_sets(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m"))
        reconciler.apply_reaction_event("m", "heart", "u1", ReactionAction.ADD)
        reconciler.apply_reaction_event("m", "heart", "u1", ReactionAction.REMOVE)
        assert reconciler.snapshot().reactions == {}

    def test_remove_absent_member_is_a_no_op(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m"))
        assert reconciler.apply_reaction_event("m", "heart", "u1", ReactionAction.REMOVE) is False

    def test_unknown_message_is_ignored(self, reconciler):
        assert reconciler.apply_reaction_event("ghost", "heart", "u1", ReactionAction.ADD) is False
        assert reconciler.snapshot().reactions == {}


class TestPins:
    def test_pin_and_unpin(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m"))
        assert reconciler.apply_pin_event("m", PinAction.PIN) is True
        assert reconciler.is_pinned("m")
        assert reconciler.apply_pin_event("m", PinAction.PIN) is False
        assert reconciler.apply_pin_event("m", PinAction.UNPIN) is True
        assert not reconciler.is_pinned("m")

    def test_unknown_message_is_ignored(self, reconciler):
        assert reconciler.apply_pin_event("ghost", PinAction.PIN) is False


class TestReadReceipts:
    def test_marks_own_messages_up_to_last_read(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m1", sender_id="me", minutes=1))
        reconciler.apply_remote_insert(make_message("m2", sender_id="bob", minutes=2))
        reconciler.apply_remote_insert(make_message("m3", sender_id="me", minutes=3))
        reconciler.apply_remote_insert(make_message("m4", sender_id="me", minutes=4))

        assert reconciler.apply_read_receipt("bob", "m3") is True

        assert reconciler.get_read_by("m1") == {"bob"}
        assert reconciler.get_read_by("m2") == set()
        assert reconciler.get_read_by("m3") == {"bob"}
        assert reconciler.get_read_by("m4") == set()

    def test_is_monotonic_and_idempotent(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m1", sender_id="me", minutes=1))
        reconciler.apply_remote_insert(make_message("m2", sender_id="me", minutes=2))
        reconciler.apply_read_receipt("bob", "m2")
        assert reconciler.apply_read_receipt("bob", "m1") is False
        assert reconciler.get_read_by("m2") == {"bob"}

    def test_reader_is_sender_is_ignored(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("m1", sender_id="me"))
        assert reconciler.apply_read_receipt("me", "m1") is False

    def test_unknown_last_read_is_ignored(self, reconciler):
        assert reconciler.apply_read_receipt("bob", "ghost") is False


class TestTypingAndPresence:
    def test_typing_start_refresh_and_stop(self, reconciler):
        assert reconciler.apply_typing_start("bob", "Bob", 10.0) is True
        assert reconciler.apply_typing_start("bob", "Bob", 10.0) is False
        assert reconciler.apply_typing_start("bob", "Bob", 12.0) is True
        assert reconciler.apply_typing_stop("bob") is True
        assert reconciler.apply_typing_stop("bob") is False

    def test_expire_typing(self, reconciler):
        reconciler.apply_typing_start("bob", "Bob", 10.0)
        reconciler.apply_typing_start("carol", "Carol", 20.0)
        assert reconciler.expire_typing(15.0) == ["bob"]
        assert set(reconciler.typing_users()) == {"carol"}

    def test_typing_view_hides_expired_entries(self, reconciler):
        reconciler.apply_typing_start("bob", "Bob", 10.0)
        assert reconciler.typing_users(now=11.0) == {}

    def test_presence_sync_replaces_wholesale(self, reconciler):
        reconciler.apply_presence_sync(["a", "b"])
        assert reconciler.apply_presence_sync({"b", "c"}) is True
        assert reconciler.snapshot().online == {"b", "c"}
        assert reconciler.apply_presence_sync(["c", "b"]) is False


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestLoadHistory:
    def test_keeps_placeholders_at_tail(self, reconciler, make_message):
        reconciler.apply_optimistic_insert(_draft(), _now())
        reconciler.load_history([make_message("b", minutes=2), make_message("a", minutes=1)])
        messages = reconciler.messages
        assert [m.id for m in messages[:2]] == ["a", "b"]
        assert messages[2].pending is True

    def test_purges_indices_of_vanished_messages(self, reconciler, make_message):
        reconciler.apply_remote_insert(make_message("a"))
        reconciler.apply_remote_insert(make_message("b", minutes=1))
        reconciler.apply_pin_event("a", PinAction.PIN)
        reconciler.apply_pin_event("b", PinAction.PIN)

        reconciler.load_history([make_message("b", minutes=1)])

        assert reconciler.snapshot().pinned == {"b"}

    def test_unchanged_history_is_a_no_op(self, reconciler, make_message):
        records = [make_message("a")]
        reconciler.load_history(records)
        version = reconciler.version
        assert reconciler.load_history(records) is False
        assert reconciler.version == version


def test_snapshot_is_a_copy(reconciler, make_message):
    reconciler.apply_remote_insert(make_message("m"))
    reconciler.apply_reaction_event("m", "heart", "u1", ReactionAction.ADD)
    snap = reconciler.snapshot()
    snap.reactions["m"]["heart"].add("intruder")
    assert reconciler.snapshot().reactions["m"]["heart"] == {"u1"}


class TestRandomSequences:
    """Mixed inserts, redeliveries, deletes and sends keep the log well-formed."""

    def _check(self, reconciler, expected):
        messages = reconciler.messages
        committed = [m for m in messages if not m.pending]
        placeholders = [m for m in messages if m.pending]

        assert messages == committed + placeholders
        keys = [m.sort_key for m in committed]
        assert keys == sorted(keys)
        assert len({m.id for m in messages}) == len(messages)
        assert {m.id: m for m in committed} == expected

    @pytest.mark.parametrize("seed", range(20))
    def test_log_stays_sorted_without_duplicates(self, reconciler, make_message, seed):
        rng = random.Random(seed)
        expected = {}
        pending = []
        committed_count = 0

        for _ in range(60):
            op = rng.choice(["insert", "insert", "insert", "delete", "send", "commit", "discard"])
            if op == "insert":
                record = make_message(f"m{rng.randrange(10)}", minutes=rng.randrange(4))
                reconciler.apply_remote_insert(record)
                expected[record.id] = record
            elif op == "delete":
                message_id = f"m{rng.randrange(10)}"
                reconciler.apply_remote_delete(message_id)
                expected.pop(message_id, None)
            elif op == "send":
                pending.append(reconciler.apply_optimistic_insert(_draft(f"draft {len(pending)}"), _now()))
            elif op == "commit" and pending:
                handle = pending.pop(rng.randrange(len(pending)))
                committed_count += 1
                record = make_message(f"c{committed_count}", sender_id="me", minutes=rng.randrange(4))
                reconciler.commit_optimistic(handle, record)
                expected[record.id] = record
            elif op == "discard" and pending:
                reconciler.discard_optimistic(pending.pop(rng.randrange(len(pending))))
            self._check(reconciler, expected)
