"""
Sync Reconciler -- Optimistic Mutation Tests

Covers:
  - local create shows up as pending-create with the provisional revision
  - confirm replaces the provisional record with the server's
  - reject of a create removes it entirely (Pending → RolledBack → Unknown)
  - update pending → confirmed, and pending → rolled back to the base
  - delete is a tombstone until confirmed; reject restores it intact
  - stacked mutations on one id fold in order over the moving base
  - server-assigned ids re-key the record and leave an alias
  - malformed / unknown confirm and reject are dropped, not fatal
"""

from syncengine.kernel.events import local_optimistic, remote_confirm, remote_reject
from syncengine.kernel.reconciler import STATE_CONFIRMED, STATE_PENDING, STATE_UNKNOWN
from syncengine.kernel.types import (
    CONFIRMED,
    OP_CREATE,
    OP_DELETE,
    OP_UPDATE,
    PENDING_CREATE,
    PENDING_DELETE,
    PENDING_UPDATE,
    PROVISIONAL_REVISION,
    Record,
)

# ============================================================================
# Helpers
# ============================================================================


def confirmed(record_id, revision, **fields):
    return Record(id=record_id, revision=revision, fields=fields)


def seed(reconciler, record):
    """Put a confirmed record in place the way the initial load does."""
    reconciler.load_snapshot([*reconciler.store.snapshot(), record])


def visible_ids(reconciler):
    return [r.id for r in reconciler.store.snapshot()]


# ============================================================================
# create
# ============================================================================


class TestCreate:
    def test_local_create_is_pending(self, reconciler):
        ev = local_optimistic(OP_CREATE, "tmp_1", {"title": "Milk"})
        result = reconciler.apply(ev)

        assert result.applied
        record = reconciler.store.get("tmp_1")
        assert record.local_state == PENDING_CREATE
        assert record.revision == PROVISIONAL_REVISION
        assert reconciler.state_of("tmp_1") == STATE_PENDING

    def test_confirm_makes_it_confirmed(self, reconciler):
        ev = local_optimistic(OP_CREATE, "tmp_1", {"title": "Milk"})
        reconciler.apply(ev)
        server = confirmed("tmp_1", 4, title="Milk", created_at="2024-05-01T10:00:00Z")
        reconciler.apply(remote_confirm("tmp_1", ev.mutation_id, OP_CREATE, server))

        assert reconciler.store.get("tmp_1") == server
        assert reconciler.state_of("tmp_1") == STATE_CONFIRMED

    def test_rejected_create_disappears(self, reconciler, notifications):
        ev = local_optimistic(OP_CREATE, "tmp_1", {"title": "Milk"})
        reconciler.apply(ev)
        result = reconciler.apply(remote_reject("tmp_1", ev.mutation_id, OP_CREATE))

        assert result.applied
        assert result.reason == "ROLLED_BACK"
        assert reconciler.store.get("tmp_1") is None
        assert reconciler.state_of("tmp_1") == STATE_UNKNOWN
        assert len(notifications) == 2

    def test_create_over_existing_id_refused(self, reconciler):
        seed(reconciler, confirmed("a", 1, title="x"))
        result = reconciler.apply(local_optimistic(OP_CREATE, "a", {"title": "y"}))
        assert not result.applied
        assert "ALREADY_EXISTS" in result.reason

    def test_server_assigned_id_rekeys(self, reconciler):
        ev = local_optimistic(OP_CREATE, "tmp_1", {"title": "Milk"})
        reconciler.apply(ev)
        server = confirmed("srv_9", 2, title="Milk")
        reconciler.apply(remote_confirm("tmp_1", ev.mutation_id, OP_CREATE, server))

        assert reconciler.store.get("tmp_1") is None
        assert reconciler.store.get("srv_9") == server
        assert reconciler.resolve_id("tmp_1") == "srv_9"
        assert visible_ids(reconciler) == ["srv_9"]


# ============================================================================
# update
# ============================================================================


class TestUpdate:
    def test_pending_update_then_confirm(self, reconciler):
        seed(reconciler, confirmed("7", 3, title="Call mom", status="todo"))
        ev = local_optimistic(OP_UPDATE, "7", {"status": "done"})
        reconciler.apply(ev)

        pending = reconciler.store.get("7")
        assert pending.local_state == PENDING_UPDATE
        assert pending.fields == {"title": "Call mom", "status": "done"}
        assert pending.revision == 3

        reconciler.apply(
            remote_confirm("7", ev.mutation_id, OP_UPDATE, confirmed("7", 4, title="Call mom", status="done"))
        )
        final = reconciler.store.get("7")
        assert final.local_state == CONFIRMED
        assert final.revision == 4

    def test_rejected_update_restores_base(self, reconciler):
        base = confirmed("7", 3, title="Call mom", status="todo")
        seed(reconciler, base)
        ev = local_optimistic(OP_UPDATE, "7", {"status": "done"})
        reconciler.apply(ev)
        reconciler.apply(remote_reject("7", ev.mutation_id, OP_UPDATE))

        assert reconciler.store.get("7") == base
        assert reconciler.state_of("7") == STATE_CONFIRMED

    def test_update_unknown_record_refused(self, reconciler):
        result = reconciler.apply(local_optimistic(OP_UPDATE, "ghost", {"title": "x"}))
        assert not result.applied
        assert "UNKNOWN_RECORD" in result.reason

    def test_stacked_updates_fold_over_moving_base(self, reconciler):
        seed(reconciler, confirmed("a", 1, title="t", status="todo", priority="low"))
        ev1 = local_optimistic(OP_UPDATE, "a", {"status": "in_progress"})
        ev2 = local_optimistic(OP_UPDATE, "a", {"priority": "high"})
        reconciler.apply(ev1)
        reconciler.apply(ev2)
        assert reconciler.store.get("a").fields == {"title": "t", "status": "in_progress", "priority": "high"}

        # first one confirmed: second still laid on top
        reconciler.apply(
            remote_confirm("a", ev1.mutation_id, OP_UPDATE, confirmed("a", 2, title="t", status="in_progress", priority="low"))
        )
        shown = reconciler.store.get("a")
        assert shown.local_state == PENDING_UPDATE
        assert shown.revision == 2
        assert shown.fields["priority"] == "high"

        # second one rejected: back to the confirmed first
        reconciler.apply(remote_reject("a", ev2.mutation_id, OP_UPDATE))
        final = reconciler.store.get("a")
        assert final.local_state == CONFIRMED
        assert final.fields == {"title": "t", "status": "in_progress", "priority": "low"}

    def test_update_on_pending_create_stays_pending_create(self, reconciler):
        reconciler.apply(local_optimistic(OP_CREATE, "tmp", {"title": "a"}))
        reconciler.apply(local_optimistic(OP_UPDATE, "tmp", {"title": "b"}))
        record = reconciler.store.get("tmp")
        assert record.local_state == PENDING_CREATE
        assert record.fields == {"title": "b"}


# ============================================================================
# delete
# ============================================================================


class TestDelete:
    def test_pending_delete_hidden_from_snapshot(self, reconciler):
        seed(reconciler, confirmed("3", 1, title="Buy milk"))
        reconciler.apply(local_optimistic(OP_DELETE, "3"))

        assert visible_ids(reconciler) == []
        assert reconciler.store.get("3").local_state == PENDING_DELETE

    def test_rejected_delete_restores_record(self, reconciler):
        original = confirmed("3", 1, title="Buy milk", priority="high")
        seed(reconciler, original)
        ev = local_optimistic(OP_DELETE, "3")
        reconciler.apply(ev)
        reconciler.apply(remote_reject("3", ev.mutation_id, OP_DELETE))

        assert visible_ids(reconciler) == ["3"]
        assert reconciler.store.get("3") == original

    def test_confirmed_delete_removes_physically(self, reconciler):
        seed(reconciler, confirmed("3", 1, title="Buy milk"))
        ev = local_optimistic(OP_DELETE, "3")
        reconciler.apply(ev)
        reconciler.apply(remote_confirm("3", ev.mutation_id, OP_DELETE))

        assert reconciler.store.get("3") is None
        assert reconciler.state_of("3") == STATE_UNKNOWN

    def test_update_after_pending_delete_refused(self, reconciler):
        seed(reconciler, confirmed("3", 1, title="Buy milk"))
        reconciler.apply(local_optimistic(OP_DELETE, "3"))
        result = reconciler.apply(local_optimistic(OP_UPDATE, "3", {"title": "x"}))
        assert not result.applied
        assert "ALREADY_REMOVED" in result.reason


# ============================================================================
# malformed settles
# ============================================================================


class TestMalformed:
    def test_confirm_for_unknown_record_dropped(self, reconciler, notifications):
        result = reconciler.apply(remote_confirm("ghost", "mut_x", OP_UPDATE, confirmed("ghost", 2)))
        assert not result.applied
        assert "UNKNOWN_RECORD" in result.reason
        assert reconciler.store.get("ghost") is None
        assert notifications == []

    def test_reject_for_unknown_mutation_dropped(self, reconciler):
        seed(reconciler, confirmed("a", 1, title="x"))
        reconciler.apply(local_optimistic(OP_UPDATE, "a", {"title": "y"}))
        result = reconciler.apply(remote_reject("a", "mut_other", OP_UPDATE))
        assert not result.applied
        assert reconciler.store.get("a").local_state == PENDING_UPDATE
