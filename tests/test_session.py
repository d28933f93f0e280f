"""Tests for client-side batch state (event application, reconciliation, resume).

Tests focus on:
- Late or duplicated events never overwrite a finished item
- Resumed runs map local event positions back to batch indices
- Reconciliation applies what the durable log recorded
- Resume resubmits everything that did not complete
"""

from datetime import datetime, timedelta, timezone

import pytest

from genbatch.client.session import HISTORY_LIMIT, BatchSession
from genbatch.models.batch import (
    Batch,
    BatchStatus,
    InvalidStateTransition,
    ItemStatus,
    MediaResult,
)
from genbatch.models.events import BatchCompleteEvent, BatchErrorEvent, ItemUpdateEvent
from genbatch.models.generation import GenerationConfig
from genbatch.models.reconciliation import BatchStatusReport, CompletedIndex, FailedIndex


def completed(index: int, name: str = "x") -> ItemUpdateEvent:
    return ItemUpdateEvent(
        index=index,
        status=ItemStatus.COMPLETED,
        result=MediaResult(url=f"https://cdn.test/{name}.png"),
    )


@pytest.fixture
def session() -> BatchSession:
    session = BatchSession()
    session.start_batch(Batch.create(["a", "b", "c"], batch_id="20260310-090000"))
    return session


class TestApplyEvent:
    def test_item_updates_follow_lifecycle(self, session):
        assert session.apply_event(ItemUpdateEvent(index=0, status=ItemStatus.QUEUED))
        assert session.apply_event(ItemUpdateEvent(index=0, status=ItemStatus.PROCESSING))
        assert session.apply_event(completed(0))

        item = session.batch.items[0]
        assert item.status == ItemStatus.COMPLETED
        assert item.result.url == "https://cdn.test/x.png"

    def test_late_event_for_finished_item_is_ignored(self, session):
        session.apply_event(completed(1, "first"))

        changed = session.apply_event(
            ItemUpdateEvent(index=1, status=ItemStatus.FAILED, error="late timeout")
        )

        assert changed is False
        assert session.batch.items[1].status == ItemStatus.COMPLETED
        assert session.batch.items[1].result.url == "https://cdn.test/first.png"

    def test_event_for_item_being_edited_is_ignored(self, session):
        session.apply_event(completed(0))
        session.begin_edit(0)

        assert session.apply_event(completed(0, "other")) is False
        assert session.batch.items[0].status == ItemStatus.EDITING

    def test_index_map_remaps_positions(self, session):
        changed = session.apply_event(completed(0, "remapped"), index_map=[2])

        assert changed
        assert session.batch.items[2].status == ItemStatus.COMPLETED
        assert session.batch.items[0].status == ItemStatus.PENDING

    def test_out_of_range_events_are_ignored(self, session):
        assert session.apply_event(completed(1), index_map=[2]) is False
        assert session.apply_event(completed(7)) is False

    def test_batch_complete_settles_batch(self, session):
        for index in range(3):
            session.apply_event(completed(index))

        session.apply_event(BatchCompleteEvent(completed=3, failed=0))

        assert session.batch.status == BatchStatus.COMPLETED

    def test_batch_complete_with_unfinished_items_interrupts(self, session):
        session.apply_event(completed(0))

        session.apply_event(BatchCompleteEvent(completed=1, failed=0))

        assert session.batch.status == BatchStatus.INTERRUPTED

    def test_batch_error_marks_error(self, session):
        session.apply_event(BatchErrorEvent(error="REPLICATE_API_TOKEN not configured"))

        assert session.batch.status == BatchStatus.ERROR
        assert session.batch.error == "REPLICATE_API_TOKEN not configured"

    def test_requires_active_batch(self):
        with pytest.raises(InvalidStateTransition, match="No active batch"):
            BatchSession().apply_event(completed(0))


class TestReconcile:
    def test_applies_logged_outcomes_and_settles(self, session):
        # Arrange
        session.apply_event(ItemUpdateEvent(index=0, status=ItemStatus.PROCESSING))
        report = BatchStatusReport(
            batch_id=session.batch.id,
            completed_indices=[CompletedIndex(index=0, url="https://cdn.test/logged.png")],
            failed_indices=[FailedIndex(index=1, error="content policy")],
        )

        # Act
        result = session.reconcile(report)

        # Assert
        assert result.completed == [0]
        assert result.failed == [1]
        assert result.status == BatchStatus.INTERRUPTED
        assert session.batch.items[0].result.url == "https://cdn.test/logged.png"
        assert session.batch.items[1].error == "content policy"
        assert session.batch.items[2].status == ItemStatus.PENDING

    def test_logged_completion_replaces_local_failure(self, session):
        session.apply_event(ItemUpdateEvent(index=2, status=ItemStatus.FAILED, error="timeout"))
        report = BatchStatusReport(
            batch_id=session.batch.id,
            completed_indices=[CompletedIndex(index=2, url="https://cdn.test/retry.png")],
        )

        session.reconcile(report)

        assert session.batch.items[2].status == ItemStatus.COMPLETED
        assert session.batch.items[2].error is None

    def test_local_completion_is_kept(self, session):
        session.apply_event(completed(0, "local"))
        report = BatchStatusReport(
            batch_id=session.batch.id,
            failed_indices=[FailedIndex(index=0, error="stale failure")],
        )

        result = session.reconcile(report)

        assert result.failed == []
        assert session.batch.items[0].result.url == "https://cdn.test/local.png"

    def test_full_report_completes_batch(self, session):
        report = BatchStatusReport(
            batch_id=session.batch.id,
            completed_indices=[
                CompletedIndex(index=n, url=f"https://cdn.test/{n}.png") for n in range(3)
            ],
        )

        result = session.reconcile(report)

        assert result.status == BatchStatus.COMPLETED


class TestPlanResume:
    def test_resubmits_everything_not_completed(self, session):
        # Arrange
        session.apply_event(completed(0))
        session.apply_event(ItemUpdateEvent(index=1, status=ItemStatus.FAILED, error="x"))
        session.apply_event(ItemUpdateEvent(index=2, status=ItemStatus.PROCESSING))

        # Act
        plan = session.plan_resume()

        # Assert
        assert plan.prompts == ["b", "c"]
        assert plan.index_map == [1, 2]
        assert session.batch.items[1].status == ItemStatus.PENDING
        assert session.batch.items[2].status == ItemStatus.PENDING
        assert session.batch.items[0].status == ItemStatus.COMPLETED

    def test_empty_plan_when_everything_completed(self, session):
        for index in range(3):
            session.apply_event(completed(index))

        plan = session.plan_resume()

        assert not plan
        assert plan.index_map == []

    def test_stale_items(self, session):
        now = datetime.now(timezone.utc)
        session.apply_event(ItemUpdateEvent(index=0, status=ItemStatus.PROCESSING))
        session.apply_event(ItemUpdateEvent(index=1, status=ItemStatus.PROCESSING))
        session.batch.items[0].updated_at = now - timedelta(minutes=6)

        stale = session.stale_items(now=now, window=timedelta(minutes=5))

        assert [item.index for item in stale] == [0]


class TestSessionLifecycle:
    def test_starting_new_batch_archives_previous(self, session):
        previous = session.batch
        for index in range(3):
            session.apply_event(completed(index))
        session.apply_event(BatchCompleteEvent(completed=3))

        session.start_batch(Batch.create(["d"], batch_id="20260310-100000"))

        assert session.batch.id == "20260310-100000"
        assert session.history[0] is previous

    def test_cannot_start_while_another_batch_runs(self, session):
        with pytest.raises(InvalidStateTransition, match="still running"):
            session.start_batch(Batch.create(["d"], batch_id="20260310-100000"))

    def test_history_is_bounded(self):
        session = BatchSession()
        for n in range(HISTORY_LIMIT + 5):
            if session.batch is not None:
                session.batch.mark_cancelled()
            session.start_batch(Batch.create(["p"], batch_id=f"batch-{n}"))

        assert len(session.history) == HISTORY_LIMIT
        assert session.history[0].id == f"batch-{HISTORY_LIMIT + 3}"

    def test_placeholder_gets_one_terminal_update(self, session):
        placeholder = session.insert_placeholder("duplicate of a")

        assert placeholder.index == 3
        assert placeholder.status == ItemStatus.PROCESSING

        session.resolve_placeholder(3, result=MediaResult(url="https://cdn.test/dup.png"))

        assert session.batch.items[3].status == ItemStatus.COMPLETED
        with pytest.raises(InvalidStateTransition):
            session.resolve_placeholder(3, error="late failure")

    def test_edit_helpers(self, session):
        session.apply_event(completed(0, "original"))

        session.begin_edit(0)
        session.complete_edit(0, MediaResult(url="https://cdn.test/edit.png"), "add snow")
        session.begin_edit(0)
        session.fail_edit(0, "provider down")

        item = session.batch.items[0]
        assert item.status == ItemStatus.COMPLETED
        assert item.result.url == "https://cdn.test/edit.png"
        assert len(item.versions) == 1

    def test_save_and_load(self, session, tmp_path):
        session.batch.config = GenerationConfig(resolution="2K")
        session.apply_event(completed(0))
        path = tmp_path / "state.json"

        session.save(path)
        loaded = BatchSession.load(path)

        assert loaded.batch.id == session.batch.id
        assert loaded.batch.config.resolution == "2K"
        assert loaded.batch.items[0].status == ItemStatus.COMPLETED
        assert loaded.batch.status == BatchStatus.RUNNING
