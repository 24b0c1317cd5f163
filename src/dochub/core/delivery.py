from __future__ import annotations

import logging
from collections.abc import Callable
from functools import partial

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dochub.config import Settings, get_settings
from dochub.core.status_tracker import StatusTracker, error_payload
from dochub.core.timeouts import call_with_timeout
from dochub.db.base import utcnow
from dochub.db.models import Employee, GeneratedLetter
from dochub.db.repositories import Repository
from dochub.errors import (
    Conflict,
    DispatchFailure,
    InvalidTransition,
    LetterWorkflowError,
    NotFound,
    Result,
    RetryLimitExceeded,
)
from dochub.mailer.dispatcher import EmailAttachment, EmailDispatcher, build_dispatcher
from dochub.types import DeliveryEvent, DeliveryEventResult

logger = logging.getLogger(__name__)

DELIVERY_EVENT_STATUS = {
    "delivered": "Delivered",
    "bounce": "Failed",
    "dropped": "Failed",
    "blocked": "Failed",
}
WEBHOOK_ACTOR = "email-webhook"


def compose_subject(settings: Settings, letter: GeneratedLetter, employee: Employee) -> str:
    return settings.email_subject_template.format(
        letter_type=letter.letter_type,
        employee_name=employee.full_name,
        letter_number=letter.letter_number,
    )


def compose_body(letter: GeneratedLetter, employee: Employee) -> str:
    generated = letter.generated_at or letter.created_at
    lines = [
        f"Dear {employee.full_name},",
        "",
        f"Please find attached your {letter.letter_type}.",
        "",
        "Best regards,",
        "HR Department",
        "",
        f"Reference: {letter.letter_number}",
    ]
    if generated is not None:
        lines.append(f"Generated: {generated:%d/%m/%Y %H:%M}")
    return "\n".join(lines) + "\n"


class LetterDelivery:
    """Sends rendered letters by email and applies delivery events to their status."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        dispatcher: EmailDispatcher | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session)
        self.dispatcher = dispatcher or build_dispatcher(self.settings)
        self.tracker = StatusTracker(session, settings=self.settings)

    def send(self, letter_id: int, *, actor: str = "") -> Result[GeneratedLetter]:
        letter = self.repo.get_letter(letter_id)
        if letter is None:
            return Result.failure(NotFound("letter", letter_id))
        if letter.status != "Generated":
            return Result.failure(
                InvalidTransition(letter_id, letter.status, "Sent", "only Generated letters can be sent, retry Failed ones")
            )
        return self.dispatch(letter, actor=actor)

    def resend(
        self,
        letter_id: int,
        *,
        actor: str = "",
        rerender: Callable[[GeneratedLetter], str] | None = None,
    ) -> Result[GeneratedLetter]:
        """Retries the send step of a ``Failed`` letter.

        Each attempt counts against ``max_send_retries``. The stored document
        is reused unless ``rerender`` is given.
        """
        letter = self.repo.get_letter(letter_id)
        if letter is None:
            return Result.failure(NotFound("letter", letter_id))
        if letter.status != "Failed":
            return Result.failure(
                InvalidTransition(letter_id, letter.status, "Sent", "only Failed letters can be retried")
            )
        ceiling = self.settings.max_send_retries
        if letter.retry_count >= ceiling:
            return Result.failure(RetryLimitExceeded(letter_id, letter.retry_count, ceiling))

        if rerender is not None:
            try:
                letter.file_path = rerender(letter)
            except LetterWorkflowError as exc:
                logger.warning("Re-render failed letter=%s: %s", letter.letter_number, exc.message)
                recorded = self._record_failure(letter, exc, expected="Failed", actor=actor, retry_attempt=True)
                return Result.failure(recorded.error if not recorded.ok else exc)

        return self.dispatch(letter, actor=actor, retry_attempt=True)

    def dispatch(
        self,
        letter: GeneratedLetter,
        *,
        actor: str = "",
        retry_attempt: bool = False,
    ) -> Result[GeneratedLetter]:
        """Emails ``letter`` and records the outcome on its status.

        The letter's current status is the expected status of the write, so a
        concurrent change between dispatch and commit is reported as ``Conflict``.
        A rejected first send moves the letter to ``Failed``; a rejected retry
        leaves it ``Failed`` and only counts the attempt.
        """
        expected = letter.status
        check = self.tracker.policy.check(
            from_status=expected,
            to_status="Sent",
            file_path=letter.file_path,
            retry_count=letter.retry_count,
        )
        if not check.allowed:
            return Result.failure(InvalidTransition(letter.id, expected, "Sent", check.reason))

        try:
            message_id = self._deliver(letter)
        except DispatchFailure as exc:
            logger.warning("Dispatch failed letter=%s: %s", letter.letter_number, exc.message)
            recorded = self._record_failure(letter, exc, expected=expected, actor=actor, retry_attempt=retry_attempt)
            return Result.failure(recorded.error if not recorded.ok else exc)

        return self.tracker.transition(
            letter.id,
            "Sent",
            actor=actor,
            notes=f"Email accepted message_id={message_id}",
            expected_status=expected,
            email_message_id=message_id,
            retry_attempt=retry_attempt,
        )

    def handle_events(self, events: list[DeliveryEvent]) -> DeliveryEventResult:
        result = DeliveryEventResult()
        for event in events:
            target = DELIVERY_EVENT_STATUS.get(event.event.lower())
            letter = self.repo.get_letter_by_message_id(event.message_id) if target else None
            if target is None or letter is None or letter.status == target:
                result.ignored += 1
                continue

            notes = f"{event.event}: {event.reason}" if event.reason else event.event
            outcome = self.tracker.transition(
                letter.id,
                target,
                actor=WEBHOOK_ACTOR,
                notes=notes[:500],
                error_message=(event.reason or event.event) if target == "Failed" else None,
            )
            if outcome.ok:
                result.processed += 1
            else:
                result.errors.append({"message_id": event.message_id, **error_payload(outcome.error)})

        logger.info(
            "Delivery events handled processed=%s ignored=%s rejected=%s",
            result.processed,
            result.ignored,
            len(result.errors),
        )
        return result

    def _deliver(self, letter: GeneratedLetter) -> str:
        employee = self.repo.get_employee(letter.employee_id)
        if employee is None:
            raise DispatchFailure(f"employee {letter.employee_id} not found", letter_id=letter.id)
        if not employee.email:
            raise DispatchFailure(f"employee {employee.employee_code} has no email address", letter_id=letter.id)

        timeout = self.settings.dispatch_timeout_sec
        send = partial(
            self.dispatcher.send,
            to=employee.email,
            subject=compose_subject(self.settings, letter, employee),
            body=compose_body(letter, employee),
            attachments=[EmailAttachment.from_path(letter.file_path)],
            timeout=timeout,
        )
        return call_with_timeout(
            send,
            timeout=timeout,
            error_cls=DispatchFailure,
            label="email dispatch",
        )

    def _record_failure(
        self,
        letter: GeneratedLetter,
        error: LetterWorkflowError,
        *,
        expected: str,
        actor: str,
        retry_attempt: bool,
    ) -> Result[GeneratedLetter]:
        if expected != "Failed":
            return self.tracker.transition(
                letter.id,
                "Failed",
                actor=actor,
                notes="Email dispatch failed",
                expected_status=expected,
                error_message=error.message,
            )

        letter.error_message = error.message
        if retry_attempt:
            letter.retry_count += 1
            letter.last_retry_at = utcnow()
        try:
            self.session.commit()
        except StaleDataError:
            self.session.rollback()
            return Result.failure(
                Conflict(f"letter {letter.id} was modified concurrently; re-read and retry", letter_id=letter.id)
            )
        self.session.refresh(letter)
        return Result.success(letter)
