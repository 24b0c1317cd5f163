from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker

from dochub.config import Settings, get_settings
from dochub.core.bulk import BulkOperationCoordinator, WorkItem
from dochub.core.delivery import LetterDelivery
from dochub.core.generator import LetterGenerator
from dochub.db.base import utcnow
from dochub.db.repositories import Repository
from dochub.errors import Conflict, NotFound, Result, ValidationError
from dochub.mailer.dispatcher import EmailDispatcher
from dochub.rendering.renderer import DocumentRenderer
from dochub.types import BulkRequest, RetryResult

logger = logging.getLogger(__name__)


class RetryManager:
    """Re-runs failed work without touching what already succeeded."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        renderer: DocumentRenderer | None = None,
        dispatcher: EmailDispatcher | None = None,
        session_factory: sessionmaker[Session] | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session)
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.coordinator = BulkOperationCoordinator(
            session,
            settings=self.settings,
            renderer=renderer,
            dispatcher=dispatcher,
            session_factory=session_factory,
        )

    def retry_operation(self, operation_id: int, item_ids: list[int] | None = None) -> Result[RetryResult]:
        self.session.expire_all()
        operation = self.repo.get_bulk_operation(operation_id)
        if operation is None:
            return Result.failure(NotFound("bulk operation", operation_id))
        if operation.status == "Running":
            return Result.failure(
                Conflict(f"bulk operation {operation_id} is still running", operation_id=operation_id)
            )

        items = self.repo.list_bulk_items(operation_id)
        if item_ids:
            known = {item.id for item in items}
            unknown = sorted(set(item_ids) - known)
            if unknown:
                return Result.failure(
                    ValidationError(
                        f"items {unknown} do not belong to bulk operation {operation_id}",
                        operation_id=operation_id,
                        item_ids=unknown,
                    )
                )
            wanted = set(item_ids)
            items = [item for item in items if item.id in wanted]

        to_run = [WorkItem(item.id, item.item_key) for item in items if item.state == "failed"]
        skipped = [item.id for item in items if item.state != "failed"]
        result = RetryResult(operation_id=operation_id, skipped_item_ids=skipped)
        if not to_run:
            logger.info("Bulk operation %s has nothing to retry", operation_id)
            return Result.success(result)

        request = BulkRequest.model_validate(operation.request_json)
        stale_before = utcnow() - timedelta(seconds=self.settings.bulk_retry_lease_sec)
        if not self.repo.claim_bulk_retry(operation_id, stale_before=stale_before):
            return Result.failure(
                Conflict(f"bulk operation {operation_id} is already being retried", operation_id=operation_id)
            )
        try:
            outcomes = self.coordinator.run_items(operation_id, request, to_run, retry=True)
        finally:
            self.repo.release_bulk_retry(operation_id)

        for item, outcome in outcomes:
            result.retried_item_ids.append(item.item_id)
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append(
                    {
                        "item_id": item.item_id,
                        "kind": outcome.error_kind,
                        "message": outcome.error_message,
                        "employee_id": outcome.employee_id,
                        "employee_name": outcome.employee_name,
                    }
                )
        result.total_retried = len(outcomes)
        logger.info(
            "Bulk operation %s retried=%s succeeded=%s failed=%s",
            operation_id,
            result.total_retried,
            result.succeeded,
            result.failed,
        )
        return Result.success(result)

    def retry_letter(self, letter_id: int, *, regenerate: bool = False, actor: str = "") -> Result[RetryResult]:
        delivery = LetterDelivery(self.session, settings=self.settings, dispatcher=self.dispatcher)
        rerender = None
        if regenerate:
            rerender = LetterGenerator(self.session, settings=self.settings, renderer=self.renderer).rerender

        outcome = delivery.resend(letter_id, actor=actor, rerender=rerender)
        if not outcome.ok:
            logger.warning("Retry of letter %s failed kind=%s", letter_id, outcome.error.kind)
            return Result.failure(outcome.error)

        letter = outcome.value
        return Result.success(
            RetryResult(
                letter_id=letter.id,
                total_retried=1,
                succeeded=1,
                letter_status=letter.status,
                retry_count=letter.retry_count,
            )
        )
