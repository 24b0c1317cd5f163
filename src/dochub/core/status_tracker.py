from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dochub.config import Settings, get_settings
from dochub.core.transitions import TIMESTAMP_FIELDS, TransitionPolicy
from dochub.db.base import utcnow
from dochub.db.models import GeneratedLetter, LetterStatusHistory
from dochub.db.repositories import Repository
from dochub.errors import Conflict, InvalidTransition, LetterWorkflowError, NotFound, Result
from dochub.types import LETTER_STATUSES, BatchStatusItem, BatchStatusResult

logger = logging.getLogger(__name__)


class StatusTracker:
    """Single writer of a letter's status and its append-only history.

    Every accepted transition updates the status, the matching timestamp and
    the history table in one commit. Writes are guarded by the letter's
    version column, so a concurrent change surfaces as ``Conflict``.
    """

    def __init__(self, session: Session, *, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session)
        self.policy = TransitionPolicy(max_retries=self.settings.max_send_retries)

    def record_generated(self, letter: GeneratedLetter, *, actor: str = "", notes: str = "") -> GeneratedLetter:
        now = utcnow()
        letter.status = "Generated"
        letter.generated_at = letter.generated_at or now
        entry = LetterStatusHistory(
            from_status="",
            to_status="Generated",
            changed_at=now,
            actor=actor or self.settings.default_actor,
            notes=notes,
        )
        saved = self.repo.add_letter(letter, entry)
        logger.info("Letter %s recorded as Generated letter_id=%s", saved.letter_number, saved.id)
        return saved

    def transition(
        self,
        letter_id: int,
        new_status: str,
        *,
        actor: str = "",
        notes: str = "",
        expected_status: str | None = None,
        email_message_id: str | None = None,
        error_message: str | None = None,
        retry_attempt: bool = False,
    ) -> Result[GeneratedLetter]:
        letter = self.repo.get_letter(letter_id)
        if letter is None:
            return Result.failure(NotFound("letter", letter_id))

        if expected_status is not None and letter.status != expected_status:
            return Result.failure(
                Conflict(
                    f"letter {letter_id} is {letter.status}, expected {expected_status}",
                    letter_id=letter_id,
                    current_status=letter.status,
                )
            )

        from_status = letter.status
        check = self.policy.check(
            from_status=from_status,
            to_status=new_status,
            file_path=letter.file_path,
            retry_count=letter.retry_count,
        )
        if not check.allowed:
            return Result.failure(InvalidTransition(letter_id, from_status, new_status, check.reason))

        now = utcnow()
        letter.status = new_status
        timestamp_field = TIMESTAMP_FIELDS.get(new_status)
        if timestamp_field:
            setattr(letter, timestamp_field, now)
        if email_message_id is not None:
            letter.email_message_id = email_message_id
        if error_message is not None:
            letter.error_message = error_message
        elif new_status in {"Sent", "Delivered"}:
            letter.error_message = ""
        if retry_attempt:
            letter.retry_count += 1
            letter.last_retry_at = now

        self.session.add(
            LetterStatusHistory(
                letter_id=letter.id,
                from_status=from_status,
                to_status=new_status,
                changed_at=now,
                actor=actor or self.settings.default_actor,
                notes=notes,
            )
        )
        try:
            self.session.commit()
        except StaleDataError:
            self.session.rollback()
            logger.warning("Concurrent status change detected letter_id=%s", letter_id)
            return Result.failure(
                Conflict(f"letter {letter_id} was modified concurrently; re-read and retry", letter_id=letter_id)
            )

        self.session.refresh(letter)
        logger.info("Letter status updated letter_id=%s %s -> %s", letter_id, from_status, new_status)
        return Result.success(letter)

    def update_batch(
        self,
        letter_ids: list[int],
        new_status: str,
        *,
        notes: str = "",
        actor: str = "",
    ) -> BatchStatusResult:
        items: list[BatchStatusItem] = []
        for letter_id in dict.fromkeys(letter_ids):
            result = self.transition(letter_id, new_status, actor=actor, notes=notes)
            if result.ok:
                items.append(BatchStatusItem(letter_id=letter_id, success=True, to_status=new_status))
                continue
            payload = error_payload(result.error)
            items.append(
                BatchStatusItem(
                    letter_id=letter_id,
                    success=False,
                    from_status=str(payload.get("from_status", "")),
                    to_status=new_status,
                    error_kind=payload.get("kind", ""),
                    error_message=payload.get("message", ""),
                )
            )

        updated = sum(1 for item in items if item.success)
        failed = len(items) - updated
        if failed:
            logger.warning("Batch status update to %s: %s updated, %s rejected", new_status, updated, failed)
        return BatchStatusResult(success=bool(items) and failed == 0, updated=updated, failed=failed, items=items)

    def history(self, letter_id: int) -> Result[list[LetterStatusHistory]]:
        if self.repo.get_letter(letter_id) is None:
            return Result.failure(NotFound("letter", letter_id))
        return Result.success(self.repo.list_status_history(letter_id))

    def summary(self) -> dict[str, Any]:
        counts = self.repo.letter_status_counts()
        breakdown = {status: counts.get(status, 0) for status in LETTER_STATUSES}
        return {"total_letters": sum(breakdown.values()), "status_breakdown": breakdown, "generated_at": utcnow()}


def error_payload(error: LetterWorkflowError | None) -> dict[str, Any]:
    return error.to_dict() if error is not None else {}
