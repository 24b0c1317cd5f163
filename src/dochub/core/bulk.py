from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from dochub.config import Settings, get_settings
from dochub.core.cancellation import CancellationToken
from dochub.core.delivery import LetterDelivery
from dochub.core.generator import LetterGenerator
from dochub.core.runtime import BulkRegistry, get_bulk_registry
from dochub.core.sequence import LetterNumberIssuer
from dochub.core.templates import TemplateResolver
from dochub.db.base import utcnow
from dochub.db.models import BulkOperation, BulkOperationItem
from dochub.db.repositories import Repository
from dochub.db.session import SessionLocal
from dochub.errors import LetterWorkflowError, NotFound, Result, ValidationError
from dochub.mailer.dispatcher import EmailDispatcher
from dochub.rendering.renderer import DocumentRenderer
from dochub.types import BulkRequest, GenerateLetterRequest, ItemOutcome

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR = "UnexpectedError"


@dataclass(slots=True)
class BulkSnapshot:
    operation: BulkOperation
    items: list[BulkOperationItem] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class WorkItem:
    item_id: int
    item_key: int


class BulkOperationCoordinator:
    """Fans a bulk request out over a bounded worker pool.

    ``run_bulk`` persists the operation and its items, then hands them to a
    driver thread and returns. The driver keeps at most ``bulk_max_workers``
    items in flight, checks the cancellation token before starting each new
    item and is the only writer of the operation's counters. Every item runs
    in its own session, and a failing item is recorded on that item only.
    """

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        renderer: DocumentRenderer | None = None,
        dispatcher: EmailDispatcher | None = None,
        session_factory: sessionmaker[Session] | None = None,
        registry: BulkRegistry | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session)
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.session_factory = session_factory or SessionLocal
        self.registry = registry or get_bulk_registry()
        self.issuer = LetterNumberIssuer(self.session_factory)

    def run_bulk(self, request: BulkRequest) -> Result[BulkOperation]:
        try:
            operation = self._create(request)
        except LetterWorkflowError as exc:
            logger.warning("Bulk %s rejected: %s", request.operation_type, exc.message)
            return Result.failure(exc)

        work = [WorkItem(item.id, item.item_key) for item in self.repo.list_bulk_items(operation.id)]
        token = CancellationToken()
        driver: Future[None] = Future()
        self.registry.register(operation.id, token, driver)
        thread = threading.Thread(
            target=self._drive,
            args=(operation.id, request, work, token, driver),
            name=f"dochub-bulk-{operation.id}",
            daemon=True,
        )
        thread.start()
        logger.info(
            "Bulk operation %s started type=%s items=%s",
            operation.id,
            request.operation_type,
            operation.total_items,
        )
        return Result.success(operation)

    def get_status(self, operation_id: int) -> Result[BulkSnapshot]:
        self.session.expire_all()
        operation = self.repo.get_bulk_operation(operation_id)
        if operation is None:
            return Result.failure(NotFound("bulk operation", operation_id))
        return Result.success(BulkSnapshot(operation=operation, items=self.repo.list_bulk_items(operation_id)))

    def cancel(self, operation_id: int) -> Result[bool]:
        self.session.expire_all()
        operation = self.repo.get_bulk_operation(operation_id)
        if operation is None:
            return Result.failure(NotFound("bulk operation", operation_id))
        if operation.status != "Running":
            return Result.success(False)

        token = self.registry.token(operation_id)
        if token is not None:
            token.cancel()
            logger.info("Cancellation requested for bulk operation %s", operation_id)
            return Result.success(True)

        # no driver in this process, e.g. the server restarted mid-run
        pending = [item.id for item in self.repo.list_bulk_items(operation_id, {"pending"})]
        self._finish(operation_id, pending, cancelled=True)
        logger.info("Orphaned bulk operation %s marked Cancelled", operation_id)
        return Result.success(True)

    def wait(self, operation_id: int, timeout: float | None = None) -> Result[BulkSnapshot]:
        driver = self.registry.driver(operation_id)
        if driver is not None:
            try:
                driver.result(timeout=timeout)
            except FutureTimeoutError:
                logger.debug("Bulk operation %s still running after %ss", operation_id, timeout)
            except Exception:
                logger.warning("Bulk operation %s driver ended with an error", operation_id)
        return self.get_status(operation_id)

    def history(
        self,
        *,
        operation_type: str | None = None,
        status: str | None = None,
        initiated_by: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[BulkOperation]:
        return self.repo.list_bulk_operations(
            operation_type=operation_type,
            status=status,
            initiated_by=initiated_by,
            page=page,
            page_size=page_size,
        )

    def stats(self) -> dict[str, Any]:
        raw = self.repo.bulk_operation_stats()
        by_status = raw["by_status"]
        processed = raw["completed_items"] + raw["failed_items"]
        return {
            "total_operations": sum(by_status.values()),
            "completed_operations": by_status.get("Completed", 0),
            "cancelled_operations": by_status.get("Cancelled", 0),
            "running_operations": by_status.get("Running", 0),
            "items_processed": processed,
            "items_succeeded": raw["completed_items"],
            "items_failed": raw["failed_items"],
            "success_rate": round(raw["completed_items"] / processed * 100, 2) if processed else 0.0,
            "operations_by_type": raw["by_type"],
            "last_started_at": raw["last_started_at"],
        }

    def run_items(
        self,
        operation_id: int,
        request: BulkRequest,
        work: list[WorkItem],
        *,
        retry: bool = False,
    ) -> list[tuple[WorkItem, ItemOutcome]]:
        """Runs ``work`` to completion on a bounded pool and records each outcome."""
        results: list[tuple[WorkItem, ItemOutcome]] = []
        workers = min(self.settings.bulk_max_workers, max(len(work), 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"dochub-retry-{operation_id}") as pool:
            futures = {pool.submit(self.process_item, request, item.item_key, retry=retry): item for item in work}
            for future in futures:
                item = futures[future]
                outcome = future.result()
                self._record(operation_id, item.item_id, outcome)
                results.append((item, outcome))
        return results

    def process_item(self, request: BulkRequest, item_key: int, *, retry: bool = False) -> ItemOutcome:
        with self.session_factory() as session:
            try:
                return self._process(session, request, item_key, retry=retry)
            except Exception as exc:
                session.rollback()
                logger.exception("Unexpected failure on bulk item key=%s", item_key)
                return ItemOutcome(success=False, error_kind=UNEXPECTED_ERROR, error_message=str(exc))

    def _create(self, request: BulkRequest) -> BulkOperation:
        if request.operation_type in {"generate", "preview"}:
            if request.template_id is None:
                raise ValidationError(f"template_id is required for {request.operation_type} operations")
            TemplateResolver(self.repo).resolve(request.template_id)

        return self.repo.create_bulk_operation(
            operation_type=request.operation_type,
            template_id=request.template_id,
            item_ids=request.item_ids,
            request_json=request.model_dump(mode="json"),
            initiated_by=request.initiated_by or self.settings.default_actor,
        )

    def _drive(
        self,
        operation_id: int,
        request: BulkRequest,
        work: list[WorkItem],
        token: CancellationToken,
        driver: Future[None],
    ) -> None:
        pending = deque(work)
        in_flight: dict[Future[ItemOutcome], WorkItem] = {}
        try:
            with ThreadPoolExecutor(
                max_workers=self.settings.bulk_max_workers,
                thread_name_prefix=f"dochub-bulk-{operation_id}",
            ) as pool:
                while pending or in_flight:
                    while pending and len(in_flight) < self.settings.bulk_max_workers and not token.cancelled:
                        item = pending.popleft()
                        in_flight[pool.submit(self.process_item, request, item.item_key)] = item
                    if not in_flight:
                        break
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        item = in_flight.pop(future)
                        self._record(operation_id, item.item_id, future.result())

            self._finish(operation_id, [item.item_id for item in pending], cancelled=token.cancelled)
        except Exception as exc:
            logger.exception("Bulk operation %s driver failed", operation_id)
            self._abort(operation_id, exc)
            driver.set_exception(exc)
            return
        driver.set_result(None)

    def _process(self, session: Session, request: BulkRequest, item_key: int, *, retry: bool) -> ItemOutcome:
        repo = Repository(session)
        actor = request.initiated_by or self.settings.default_actor

        if request.operation_type == "send-email":
            letter = repo.get_letter(item_key)
            employee = repo.get_employee(letter.employee_id) if letter is not None else None
            delivery = LetterDelivery(session, settings=self.settings, dispatcher=self.dispatcher)
            if retry and letter is not None and letter.status == "Failed":
                result = delivery.resend(item_key, actor=actor)
            else:
                result = delivery.send(item_key, actor=actor)
            return _outcome(
                result,
                employee_id=employee.id if employee else None,
                employee_name=employee.full_name if employee else "",
                letter_id=item_key,
                letter_number=letter.letter_number if letter else "",
            )

        employee = repo.get_employee(item_key)
        employee_name = employee.full_name if employee else ""
        generator = LetterGenerator(session, settings=self.settings, renderer=self.renderer, issuer=self.issuer)

        if request.operation_type == "preview":
            preview = generator.preview(
                template_id=request.template_id,
                employee_id=item_key,
                signature=request.signature,
                field_values=request.common_field_values,
            )
            return _outcome(
                preview,
                employee_id=item_key,
                employee_name=employee_name,
                preview_path=preview.value.path if preview.ok else "",
            )

        generated = generator.generate(
            GenerateLetterRequest(
                template_id=request.template_id,
                employee_id=item_key,
                signature_id=request.signature.signature_id,
                use_latest_signature=request.signature.use_latest,
                field_values=request.common_field_values,
                actor=actor,
            )
        )
        return _outcome(
            generated,
            employee_id=item_key,
            employee_name=employee_name,
            letter_id=generated.value.id if generated.ok else None,
            letter_number=generated.value.letter_number if generated.ok else "",
        )

    def _record(self, operation_id: int, item_id: int, outcome: ItemOutcome) -> None:
        with self.session_factory() as session:
            operation = session.get(BulkOperation, operation_id)
            item = session.get(BulkOperationItem, item_id)
            if operation is None or item is None:
                logger.warning("Bulk item %s of operation %s disappeared", item_id, operation_id)
                return

            if item.state == "failed":
                operation.failed_items -= 1
            elif item.state == "succeeded":
                operation.completed_items -= 1

            item.state = "succeeded" if outcome.success else "failed"
            item.attempts += 1
            item.finished_at = utcnow()
            item.employee_id = outcome.employee_id if outcome.employee_id is not None else item.employee_id
            item.employee_name = outcome.employee_name or item.employee_name
            item.letter_id = outcome.letter_id if outcome.letter_id is not None else item.letter_id
            item.letter_number = outcome.letter_number or item.letter_number
            item.preview_path = outcome.preview_path or item.preview_path
            item.error_kind = outcome.error_kind
            item.error_message = outcome.error_message

            if outcome.success:
                operation.completed_items += 1
            else:
                operation.failed_items += 1
            session.commit()

        if not outcome.success:
            logger.warning(
                "Bulk operation %s item %s failed kind=%s: %s",
                operation_id,
                item_id,
                outcome.error_kind,
                outcome.error_message,
            )

    def _finish(self, operation_id: int, skipped_item_ids: list[int], *, cancelled: bool) -> None:
        now = utcnow()
        with self.session_factory() as session:
            operation = session.get(BulkOperation, operation_id)
            if operation is None:
                return
            for item_id in skipped_item_ids:
                item = session.get(BulkOperationItem, item_id)
                if item is not None and item.state == "pending":
                    item.state = "skipped"
                    item.finished_at = now
            operation.status = "Cancelled" if cancelled else "Completed"
            operation.completed_at = now
            session.commit()
            logger.info(
                "Bulk operation %s %s completed=%s failed=%s skipped=%s",
                operation_id,
                operation.status,
                operation.completed_items,
                operation.failed_items,
                len(skipped_item_ids),
            )

    def _abort(self, operation_id: int, exc: Exception) -> None:
        now = utcnow()
        with self.session_factory() as session:
            session.rollback()
            operation = session.get(BulkOperation, operation_id)
            if operation is None:
                return
            for item in Repository(session).list_bulk_items(operation_id, {"pending"}):
                item.state = "failed"
                item.error_kind = UNEXPECTED_ERROR
                item.error_message = str(exc)
                item.finished_at = now
                operation.failed_items += 1
            operation.error = str(exc)
            operation.status = "Completed"
            operation.completed_at = now
            session.commit()


def _outcome(result: Result[Any], **details: Any) -> ItemOutcome:
    if result.ok:
        return ItemOutcome(success=True, **details)
    return ItemOutcome(success=False, error_kind=result.error.kind, error_message=result.error.message, **details)
