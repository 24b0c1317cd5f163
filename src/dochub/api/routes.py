from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any, NoReturn, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dochub.api.deps import get_db, get_dispatcher, get_renderer
from dochub.api.schemas import (
    BatchStatusUpdateRequest,
    BulkCancelResponse,
    BulkGenerateRequest,
    BulkItemResponse,
    BulkOperationResponse,
    BulkRetryRequest,
    BulkSendRequest,
    BulkStatsResponse,
    BulkStatusResponse,
    EmployeeCreateRequest,
    EmployeeResponse,
    LetterGenerateRequest,
    LetterResponse,
    LetterRetryRequest,
    LetterSendRequest,
    SignatureCreateRequest,
    SignatureResponse,
    StatusHistoryResponse,
    StatusSummaryResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TemplateCreateRequest,
    TemplateFieldResponse,
    TemplateResponse,
)
from dochub.core.bulk import BulkOperationCoordinator, BulkSnapshot
from dochub.core.delivery import LetterDelivery
from dochub.core.generator import LetterGenerator
from dochub.core.retry import RetryManager
from dochub.core.status_tracker import StatusTracker
from dochub.db.models import (
    BulkOperation,
    BulkOperationItem,
    DigitalSignature,
    Employee,
    GeneratedLetter,
    LetterStatusHistory,
    LetterTemplate,
)
from dochub.db.repositories import Repository
from dochub.errors import (
    Conflict,
    DispatchFailure,
    LetterWorkflowError,
    NotFound,
    RenderFailure,
    Result,
    RetryLimitExceeded,
    ValidationError,
)
from dochub.mailer.dispatcher import EmailDispatcher
from dochub.rendering.renderer import DocumentRenderer
from dochub.types import (
    BatchStatusResult,
    BulkRequest,
    DeliveryEvent,
    DeliveryEventResult,
    GenerateLetterRequest,
    RetryResult,
    SignaturePolicy,
)

router = APIRouter(prefix="/api", tags=["api"])

T = TypeVar("T")


def http_status_for(error: LetterWorkflowError) -> int:
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, (Conflict, RetryLimitExceeded)):
        return 409
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, (RenderFailure, DispatchFailure)):
        return 502
    return 500


def raise_workflow_error(error: LetterWorkflowError) -> NoReturn:
    raise HTTPException(status_code=http_status_for(error), detail=error.to_dict())


def unwrap(result: Result[T]) -> T:
    if result.error is not None:
        raise_workflow_error(result.error)
    return result.value  # type: ignore[return-value]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _template_response(template: LetterTemplate, repo: Repository) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        name=template.name,
        letter_type=template.letter_type,
        description=template.description,
        data_source=template.data_source,
        is_active=template.is_active,
        fields=[
            TemplateFieldResponse(
                id=item.id,
                field_name=item.field_name,
                display_name=item.display_name,
                data_type=item.data_type,
                is_required=item.is_required,
                default_value=item.default_value,
                sort_order=item.sort_order,
            )
            for item in repo.list_template_fields(template.id)
        ],
    )


def _employee_response(employee: Employee) -> EmployeeResponse:
    return EmployeeResponse(
        id=employee.id,
        employee_code=employee.employee_code,
        full_name=employee.full_name,
        email=employee.email,
        department=employee.department,
        designation=employee.designation,
        is_active=employee.is_active,
    )


def _signature_response(signature: DigitalSignature) -> SignatureResponse:
    return SignatureResponse(
        id=signature.id,
        signature_name=signature.signature_name,
        authority_name=signature.authority_name,
        authority_designation=signature.authority_designation,
        has_image=bool(signature.image_data or signature.image_path),
        is_active=signature.is_active,
        created_at=_iso(signature.created_at),
    )


def _letter_response(letter: GeneratedLetter) -> LetterResponse:
    return LetterResponse(
        id=letter.id,
        letter_number=letter.letter_number,
        letter_type=letter.letter_type,
        template_id=letter.template_id,
        employee_id=letter.employee_id,
        signature_id=letter.signature_id,
        file_path=letter.file_path,
        status=letter.status,
        fields=dict(letter.bound_fields_json or {}),
        email_message_id=letter.email_message_id,
        error_message=letter.error_message,
        retry_count=letter.retry_count,
        generated_at=_iso(letter.generated_at),
        sent_at=_iso(letter.sent_at),
        delivered_at=_iso(letter.delivered_at),
        last_retry_at=_iso(letter.last_retry_at),
    )


def _history_response(row: LetterStatusHistory) -> StatusHistoryResponse:
    return StatusHistoryResponse(
        id=row.id,
        letter_id=row.letter_id,
        from_status=row.from_status,
        to_status=row.to_status,
        changed_at=_iso(row.changed_at),
        actor=row.actor,
        notes=row.notes,
    )


def _operation_fields(operation: BulkOperation) -> dict[str, Any]:
    return {
        "id": operation.id,
        "operation_type": operation.operation_type,
        "template_id": operation.template_id,
        "status": operation.status,
        "total_items": operation.total_items,
        "completed_items": operation.completed_items,
        "failed_items": operation.failed_items,
        "initiated_by": operation.initiated_by,
        "error": operation.error,
        "started_at": _iso(operation.started_at),
        "completed_at": _iso(operation.completed_at),
    }


def _item_response(item: BulkOperationItem) -> BulkItemResponse:
    return BulkItemResponse(
        id=item.id,
        position=item.position,
        item_key=item.item_key,
        state=item.state,
        employee_id=item.employee_id,
        employee_name=item.employee_name,
        letter_id=item.letter_id,
        letter_number=item.letter_number,
        preview_path=item.preview_path,
        error_kind=item.error_kind,
        error_message=item.error_message,
        attempts=item.attempts,
        finished_at=_iso(item.finished_at),
    )


def _status_response(snapshot: BulkSnapshot) -> BulkStatusResponse:
    operation = snapshot.operation
    done = operation.completed_items + operation.failed_items
    progress = round(done / operation.total_items * 100, 2) if operation.total_items else 0.0
    return BulkStatusResponse(
        **_operation_fields(operation),
        progress_percentage=progress,
        items=[_item_response(item) for item in snapshot.items],
    )


def _coordinator(db: Session, renderer: DocumentRenderer, dispatcher: EmailDispatcher) -> BulkOperationCoordinator:
    return BulkOperationCoordinator(db, renderer=renderer, dispatcher=dispatcher)


# reference data


@router.post("/templates", response_model=TemplateResponse)
def create_template(payload: TemplateCreateRequest, db: Session = Depends(get_db)) -> TemplateResponse:
    repo = Repository(db)
    fields = [item.model_dump(exclude_none=True) for item in payload.fields]
    try:
        template = repo.create_template(
            name=payload.name,
            letter_type=payload.letter_type,
            template_content=payload.template_content,
            fields=fields,
            description=payload.description,
            data_source=payload.data_source,
            is_active=payload.is_active,
        )
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="Template fields must have unique names") from exc
    return _template_response(template, repo)


@router.get("/templates", response_model=list[TemplateResponse])
def list_templates(active_only: bool = False, db: Session = Depends(get_db)) -> list[TemplateResponse]:
    repo = Repository(db)
    return [_template_response(row, repo) for row in repo.list_templates(active_only=active_only)]


@router.post("/employees", response_model=EmployeeResponse)
def create_employee(payload: EmployeeCreateRequest, db: Session = Depends(get_db)) -> EmployeeResponse:
    repo = Repository(db)
    try:
        employee = repo.create_employee(**payload.model_dump())
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="Employee code already exists") from exc
    return _employee_response(employee)


@router.get("/employees", response_model=list[EmployeeResponse])
def list_employees(active_only: bool = False, db: Session = Depends(get_db)) -> list[EmployeeResponse]:
    return [_employee_response(row) for row in Repository(db).list_employees(active_only=active_only)]


@router.post("/signatures", response_model=SignatureResponse)
def create_signature(payload: SignatureCreateRequest, db: Session = Depends(get_db)) -> SignatureResponse:
    image_data = None
    if payload.image_base64:
        try:
            image_data = base64.b64decode(payload.image_base64, validate=True)
        except binascii.Error as exc:
            raise HTTPException(status_code=422, detail="image_base64 is not valid base64") from exc

    signature = Repository(db).create_signature(
        signature_name=payload.signature_name,
        authority_name=payload.authority_name,
        authority_designation=payload.authority_designation,
        image_path=payload.image_path,
        image_data=image_data,
        image_mime=payload.image_mime,
        is_active=payload.is_active,
        sort_order=payload.sort_order,
    )
    return _signature_response(signature)


@router.get("/signatures", response_model=list[SignatureResponse])
def list_signatures(active_only: bool = False, db: Session = Depends(get_db)) -> list[SignatureResponse]:
    return [_signature_response(row) for row in Repository(db).list_signatures(active_only=active_only)]


# letters


@router.post("/letters/generate", response_model=LetterResponse)
def generate_letter(
    payload: LetterGenerateRequest,
    db: Session = Depends(get_db),
    renderer: DocumentRenderer = Depends(get_renderer),
) -> LetterResponse:
    generator = LetterGenerator(db, renderer=renderer)
    letter = unwrap(generator.generate(GenerateLetterRequest(**payload.model_dump())))
    return _letter_response(letter)


@router.get("/letters", response_model=list[LetterResponse])
def list_letters(
    status: str | None = None,
    employee_id: int | None = None,
    template_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[LetterResponse]:
    rows = Repository(db).list_letters(status=status, employee_id=employee_id, template_id=template_id, limit=limit)
    return [_letter_response(row) for row in rows]


@router.get("/letters/status-summary", response_model=StatusSummaryResponse)
def letter_status_summary(db: Session = Depends(get_db)) -> StatusSummaryResponse:
    summary = StatusTracker(db).summary()
    return StatusSummaryResponse(
        total_letters=summary["total_letters"],
        status_breakdown=summary["status_breakdown"],
        generated_at=summary["generated_at"].isoformat(),
    )


@router.put("/letters/status-batch", response_model=BatchStatusResult)
def update_status_batch(payload: BatchStatusUpdateRequest, db: Session = Depends(get_db)) -> BatchStatusResult:
    return StatusTracker(db).update_batch(
        payload.letter_ids,
        payload.new_status,
        notes=payload.notes,
        actor=payload.actor,
    )


@router.get("/letters/{letter_id}", response_model=LetterResponse)
def get_letter(letter_id: int, db: Session = Depends(get_db)) -> LetterResponse:
    letter = Repository(db).get_letter(letter_id)
    if letter is None:
        raise_workflow_error(NotFound("letter", letter_id))
    return _letter_response(letter)


@router.put("/letters/{letter_id}/status", response_model=StatusUpdateResponse)
def update_letter_status(
    letter_id: int,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
) -> StatusUpdateResponse:
    letter = unwrap(
        StatusTracker(db).transition(
            letter_id,
            payload.new_status,
            actor=payload.actor,
            notes=payload.notes,
            expected_status=payload.expected_status,
        )
    )
    return StatusUpdateResponse(success=True, letter=_letter_response(letter))


@router.get("/letters/{letter_id}/history", response_model=list[StatusHistoryResponse])
def get_letter_history(letter_id: int, db: Session = Depends(get_db)) -> list[StatusHistoryResponse]:
    rows = unwrap(StatusTracker(db).history(letter_id))
    return [_history_response(row) for row in rows]


@router.post("/letters/{letter_id}/send", response_model=LetterResponse)
def send_letter(
    letter_id: int,
    payload: LetterSendRequest | None = None,
    db: Session = Depends(get_db),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> LetterResponse:
    delivery = LetterDelivery(db, dispatcher=dispatcher)
    letter = unwrap(delivery.send(letter_id, actor=payload.actor if payload else ""))
    return _letter_response(letter)


@router.post("/letters/{letter_id}/resend", response_model=RetryResult)
def resend_letter(
    letter_id: int,
    payload: LetterRetryRequest | None = None,
    db: Session = Depends(get_db),
    renderer: DocumentRenderer = Depends(get_renderer),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> RetryResult:
    payload = payload or LetterRetryRequest()
    manager = RetryManager(db, renderer=renderer, dispatcher=dispatcher)
    return unwrap(manager.retry_letter(letter_id, regenerate=payload.regenerate, actor=payload.actor))


@router.post("/webhooks/email-events", response_model=DeliveryEventResult)
def email_events(
    events: list[DeliveryEvent],
    db: Session = Depends(get_db),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> DeliveryEventResult:
    return LetterDelivery(db, dispatcher=dispatcher).handle_events(events)


# bulk operations


@router.post("/bulk/generate", response_model=BulkOperationResponse, status_code=202)
def bulk_generate(
    payload: BulkGenerateRequest,
    db: Session = Depends(get_db),
    renderer: DocumentRenderer = Depends(get_renderer),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> BulkOperationResponse:
    return _start_bulk(_coordinator(db, renderer, dispatcher), "generate", payload)


@router.post("/bulk/preview", response_model=BulkOperationResponse, status_code=202)
def bulk_preview(
    payload: BulkGenerateRequest,
    db: Session = Depends(get_db),
    renderer: DocumentRenderer = Depends(get_renderer),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> BulkOperationResponse:
    return _start_bulk(_coordinator(db, renderer, dispatcher), "preview", payload)


@router.post("/bulk/send-emails", response_model=BulkOperationResponse, status_code=202)
def bulk_send_emails(
    payload: BulkSendRequest,
    db: Session = Depends(get_db),
    renderer: DocumentRenderer = Depends(get_renderer),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> BulkOperationResponse:
    request = BulkRequest(
        operation_type="send-email",
        item_ids=payload.letter_ids,
        initiated_by=payload.initiated_by,
    )
    operation = unwrap(_coordinator(db, renderer, dispatcher).run_bulk(request))
    return BulkOperationResponse(**_operation_fields(operation))


@router.get("/bulk", response_model=list[BulkOperationResponse])
def list_bulk_operations(
    operation_type: str | None = None,
    status: str | None = None,
    initiated_by: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> list[BulkOperationResponse]:
    rows = BulkOperationCoordinator(db).history(
        operation_type=operation_type,
        status=status,
        initiated_by=initiated_by,
        page=page,
        page_size=page_size,
    )
    return [BulkOperationResponse(**_operation_fields(row)) for row in rows]


@router.get("/bulk/stats", response_model=BulkStatsResponse)
def bulk_stats(db: Session = Depends(get_db)) -> BulkStatsResponse:
    stats = BulkOperationCoordinator(db).stats()
    stats["last_started_at"] = _iso(stats["last_started_at"])
    return BulkStatsResponse(**stats)


@router.get("/bulk/{operation_id}", response_model=BulkStatusResponse)
def get_bulk_status(operation_id: int, db: Session = Depends(get_db)) -> BulkStatusResponse:
    return _status_response(unwrap(BulkOperationCoordinator(db).get_status(operation_id)))


@router.post("/bulk/{operation_id}/cancel", response_model=BulkCancelResponse)
def cancel_bulk_operation(operation_id: int, db: Session = Depends(get_db)) -> BulkCancelResponse:
    cancelled = unwrap(BulkOperationCoordinator(db).cancel(operation_id))
    return BulkCancelResponse(operation_id=operation_id, cancelled=cancelled)


@router.post("/bulk/{operation_id}/retry", response_model=RetryResult)
def retry_bulk_operation(
    operation_id: int,
    payload: BulkRetryRequest | None = None,
    db: Session = Depends(get_db),
    renderer: DocumentRenderer = Depends(get_renderer),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> RetryResult:
    manager = RetryManager(db, renderer=renderer, dispatcher=dispatcher)
    return unwrap(manager.retry_operation(operation_id, payload.item_ids if payload else None))


def _start_bulk(
    coordinator: BulkOperationCoordinator,
    operation_type: str,
    payload: BulkGenerateRequest,
) -> BulkOperationResponse:
    request = BulkRequest(
        operation_type=operation_type,
        template_id=payload.template_id,
        item_ids=payload.employee_ids,
        common_field_values=payload.common_field_values,
        signature=SignaturePolicy(signature_id=payload.signature_id, use_latest=payload.use_latest_signature),
        initiated_by=payload.initiated_by,
    )
    operation = unwrap(coordinator.run_bulk(request))
    return BulkOperationResponse(**_operation_fields(operation))
