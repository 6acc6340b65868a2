"""History events, projection replay and the history stores."""

import pytest

from sentiment_workflow.workflow.exceptions import HistoryConflictError
from sentiment_workflow.workflow.models import (
    EventKind,
    HistoryGapError,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    new_history_event,
)
from sentiment_workflow.workflow.store import FileHistoryStore, InMemoryHistoryStore

WORKFLOW_ID = "sentiment-analysis-iPhone 15/Pro-1700000000000"


def _started():
    return new_history_event(
        WORKFLOW_ID,
        EventKind.WORKFLOW_STARTED,
        {"input": {"product_name": "iPhone 15/Pro"}, "started_at": 1700000000.0},
    )


def _scheduled(step="register_product", activity="register_product"):
    return new_history_event(
        WORKFLOW_ID,
        EventKind.ACTIVITY_SCHEDULED,
        {"step": step, "activity": activity, "args": ["iPhone 15/Pro"], "attempt": 1},
    )


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryHistoryStore()
    return FileHistoryStore(tmp_path / "history")


def test_append_assigns_contiguous_sequences(store):
    first = store.append(_started(), expected_sequence=0)
    second = store.append(_scheduled())

    assert (first.sequence, second.sequence) == (1, 2)
    assert store.last_sequence(WORKFLOW_ID) == 2
    assert [event.kind for event in store.read(WORKFLOW_ID)] == [
        EventKind.WORKFLOW_STARTED,
        EventKind.ACTIVITY_SCHEDULED,
    ]
    assert [event.sequence for event in store.read(WORKFLOW_ID, after_sequence=1)] == [2]


def test_append_rejects_stale_writer(store):
    store.append(_started(), expected_sequence=0)
    store.append(_scheduled(), expected_sequence=1)

    with pytest.raises(HistoryConflictError) as info:
        store.append(_scheduled("fetch_reviews", "fetch_reviews"), expected_sequence=1)

    assert info.value.expected == 1
    assert info.value.actual == 2
    assert store.last_sequence(WORKFLOW_ID) == 2


def test_second_start_with_same_id_conflicts(store):
    store.append(_started(), expected_sequence=0)

    with pytest.raises(HistoryConflictError):
        store.append(_started(), expected_sequence=0)


def test_unknown_workflow_is_empty(store):
    assert store.read("missing") == []
    assert store.last_sequence("missing") == 0
    assert not store.exists("missing")
    assert store.list_workflow_ids() == []


def test_ids_with_free_form_product_names_are_listed(store):
    store.append(_started(), expected_sequence=0)

    assert store.exists(WORKFLOW_ID)
    assert store.list_workflow_ids() == [WORKFLOW_ID]


def test_file_store_survives_restart(tmp_path):
    base = tmp_path / "history"
    FileHistoryStore(base).append(_started(), expected_sequence=0)

    reopened = FileHistoryStore(base)
    stored = reopened.append(_scheduled(), expected_sequence=1)

    assert stored.sequence == 2
    assert len(reopened.read(WORKFLOW_ID)) == 2


def test_file_store_skips_corrupt_lines(tmp_path):
    store = FileHistoryStore(tmp_path)
    store.append(_started(), expected_sequence=0)
    with store._history_file(WORKFLOW_ID).open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")

    assert [event.sequence for event in store.read(WORKFLOW_ID)] == [1]


def test_replay_builds_projection():
    store = InMemoryHistoryStore()
    store.append(_started())
    store.append(_scheduled())
    store.append(
        new_history_event(
            WORKFLOW_ID,
            EventKind.ACTIVITY_COMPLETED,
            {"step": "register_product", "attempt": 1, "result": "product-1"},
        )
    )

    instance = WorkflowInstance.replay(WORKFLOW_ID, store.read(WORKFLOW_ID))

    assert instance.status is WorkflowStatus.RUNNING
    assert instance.product_name == "iPhone 15/Pro"
    assert instance.started_at_epoch == 1700000000.0
    assert instance.last_sequence == 3
    step = instance.step("register_product")
    assert step.status is StepStatus.COMPLETED
    assert step.result == "product-1"
    assert instance.pending_steps() == []


def test_replay_rejects_gaps():
    store = InMemoryHistoryStore()
    store.append(_started())
    store.append(_scheduled())
    events = store.read(WORKFLOW_ID)

    with pytest.raises(HistoryGapError):
        WorkflowInstance.replay(WORKFLOW_ID, [events[1]])


def test_outcome_for_unscheduled_step_is_rejected():
    store = InMemoryHistoryStore()
    store.append(_started())
    store.append(
        new_history_event(
            WORKFLOW_ID,
            EventKind.ACTIVITY_COMPLETED,
            {"step": "fetch_reviews", "attempt": 1, "result": []},
        )
    )

    with pytest.raises(HistoryGapError):
        WorkflowInstance.replay(WORKFLOW_ID, store.read(WORKFLOW_ID))


def test_terminal_status_is_absorbing():
    store = InMemoryHistoryStore()
    store.append(_started())
    store.append(new_history_event(WORKFLOW_ID, EventKind.WORKFLOW_CANCELLED, {"reason": "stop"}))
    store.append(new_history_event(WORKFLOW_ID, EventKind.WORKFLOW_COMPLETED, {"result": {}}))

    instance = WorkflowInstance.replay(WORKFLOW_ID, store.read(WORKFLOW_ID))

    assert instance.status is WorkflowStatus.CANCELLED
    assert instance.failure == {"error_type": "cancelled", "message": "stop"}
    assert instance.result is None
