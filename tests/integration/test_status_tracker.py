from dochub.core.generator import LetterGenerator
from dochub.core.status_tracker import StatusTracker
from dochub.core.transitions import TransitionPolicy
from dochub.db.session import SessionLocal
from dochub.types import GenerateLetterRequest


def _generate(db, workflow, index: int = 0):
    return LetterGenerator(db).generate(
        GenerateLetterRequest(
            template_id=workflow.template_id,
            employee_id=workflow.employee_ids[index],
            field_values={"Amount": "500"},
        )
    ).unwrap()


def test_skipping_sent_is_rejected_without_mutation(workflow) -> None:
    with SessionLocal() as db:
        letter = _generate(db, workflow)
        tracker = StatusTracker(db)

        result = tracker.transition(letter.id, "Delivered")

        assert result.error.kind == "InvalidTransition"
        db.expire_all()
        assert tracker.repo.get_letter(letter.id).status == "Generated"
        assert tracker.repo.get_letter(letter.id).delivered_at is None
        assert len(tracker.history(letter.id).unwrap()) == 1


def test_transitions_update_timestamps_and_history(workflow) -> None:
    with SessionLocal() as db:
        letter = _generate(db, workflow)
        tracker = StatusTracker(db)

        sent = tracker.transition(letter.id, "Sent", actor="hr-admin", notes="posted").unwrap()
        assert sent.sent_at is not None
        delivered = tracker.transition(letter.id, "Delivered").unwrap()
        assert delivered.delivered_at is not None

        history = tracker.history(letter.id).unwrap()
        assert [row.to_status for row in history] == ["Generated", "Sent", "Delivered"]
        assert history[1].actor == "hr-admin"
        assert history[1].notes == "posted"
        assert history[2].actor == "System"
        assert TransitionPolicy(max_retries=3).is_valid_walk([row.to_status for row in history])


def test_history_of_unknown_letter_is_not_found() -> None:
    with SessionLocal() as db:
        assert StatusTracker(db).history(404).error.kind == "NotFound"
        assert StatusTracker(db).transition(404, "Sent").error.kind == "NotFound"


def test_expected_status_mismatch_is_conflict(workflow) -> None:
    with SessionLocal() as db:
        letter = _generate(db, workflow)
        result = StatusTracker(db).transition(letter.id, "Failed", expected_status="Sent")
        assert result.error.kind == "Conflict"


def test_concurrent_change_is_conflict(workflow) -> None:
    with SessionLocal() as db:
        letter_id = _generate(db, workflow).id

    with SessionLocal() as first, SessionLocal() as second:
        stale = StatusTracker(first)
        assert stale.repo.get_letter(letter_id).status == "Generated"

        StatusTracker(second).transition(letter_id, "Failed").unwrap()

        result = stale.transition(letter_id, "Sent")
        assert result.error.kind == "Conflict"

    with SessionLocal() as db:
        tracker = StatusTracker(db)
        assert tracker.repo.get_letter(letter_id).status == "Failed"
        assert [row.to_status for row in tracker.history(letter_id).unwrap()] == ["Generated", "Failed"]


def test_batch_update_reports_each_letter(workflow) -> None:
    with SessionLocal() as db:
        first = _generate(db, workflow, 0)
        second = _generate(db, workflow, 1)
        tracker = StatusTracker(db)
        tracker.transition(first.id, "Sent").unwrap()

        result = tracker.update_batch([first.id, second.id, first.id, 999], "Delivered", notes="courier")

        assert not result.success
        assert (result.updated, result.failed) == (1, 2)
        by_id = {item.letter_id: item for item in result.items}
        assert by_id[first.id].success
        assert by_id[second.id].error_kind == "InvalidTransition"
        assert by_id[second.id].from_status == "Generated"
        assert by_id[999].error_kind == "NotFound"
        db.expire_all()
        assert tracker.repo.get_letter(second.id).status == "Generated"


def test_batch_update_all_valid(workflow) -> None:
    with SessionLocal() as db:
        ids = [_generate(db, workflow, index).id for index in range(3)]
        result = StatusTracker(db).update_batch(ids, "Failed", notes="printer jam")
        assert result.success
        assert result.updated == 3


def test_summary_counts_every_status(workflow) -> None:
    with SessionLocal() as db:
        first = _generate(db, workflow, 0)
        _generate(db, workflow, 1)
        tracker = StatusTracker(db)
        tracker.transition(first.id, "Sent").unwrap()

        summary = tracker.summary()
        assert summary["total_letters"] == 2
        assert summary["status_breakdown"] == {"Generated": 1, "Sent": 1, "Delivered": 0, "Failed": 0}
