from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field

from dochub.types import FieldDataType, LetterStatus


class TemplateFieldRequest(BaseModel):
    field_name: str
    display_name: str = ""
    data_type: FieldDataType = "Text"
    is_required: bool = False
    default_value: str | None = None
    sort_order: int | None = None


class TemplateCreateRequest(BaseModel):
    name: str
    letter_type: str
    template_content: str
    description: str = ""
    data_source: Literal["upload", "database"] = "upload"
    is_active: bool = True
    fields: list[TemplateFieldRequest] = Field(default_factory=list)


class TemplateFieldResponse(BaseModel):
    id: int
    field_name: str
    display_name: str
    data_type: str
    is_required: bool
    default_value: str | None
    sort_order: int


class TemplateResponse(BaseModel):
    id: int
    name: str
    letter_type: str
    description: str
    data_source: str
    is_active: bool
    fields: list[TemplateFieldResponse] = Field(default_factory=list)


class EmployeeCreateRequest(BaseModel):
    employee_code: str
    first_name: str
    middle_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    department: str = ""
    designation: str = ""
    joining_date: date | None = None
    is_active: bool = True
    attributes: dict[str, Any] = Field(default_factory=dict)


class EmployeeResponse(BaseModel):
    id: int
    employee_code: str
    full_name: str
    email: str
    department: str
    designation: str
    is_active: bool


class SignatureCreateRequest(BaseModel):
    signature_name: str
    authority_name: str
    authority_designation: str = ""
    image_path: str = ""
    image_base64: str = ""
    image_mime: str = "image/png"
    is_active: bool = True
    sort_order: int = 0


class SignatureResponse(BaseModel):
    id: int
    signature_name: str
    authority_name: str
    authority_designation: str
    has_image: bool
    is_active: bool
    created_at: str | None


class LetterGenerateRequest(BaseModel):
    template_id: int
    employee_id: int
    signature_id: int | None = None
    use_latest_signature: bool = True
    field_values: dict[str, Any] = Field(default_factory=dict)
    actor: str = ""


class LetterResponse(BaseModel):
    id: int
    letter_number: str
    letter_type: str
    template_id: int
    employee_id: int
    signature_id: int | None
    file_path: str
    status: str
    fields: dict[str, Any]
    email_message_id: str
    error_message: str
    retry_count: int
    generated_at: str | None
    sent_at: str | None
    delivered_at: str | None
    last_retry_at: str | None


class LetterSendRequest(BaseModel):
    actor: str = ""


class LetterRetryRequest(BaseModel):
    regenerate: bool = False
    actor: str = ""


class StatusUpdateRequest(BaseModel):
    new_status: LetterStatus
    notes: str = ""
    actor: str = ""
    expected_status: LetterStatus | None = None


class StatusUpdateResponse(BaseModel):
    success: bool
    letter: LetterResponse


class BatchStatusUpdateRequest(BaseModel):
    letter_ids: list[int] = Field(min_length=1)
    new_status: LetterStatus
    notes: str = ""
    actor: str = ""


class StatusHistoryResponse(BaseModel):
    id: int
    letter_id: int
    from_status: str
    to_status: str
    changed_at: str | None
    actor: str
    notes: str


class StatusSummaryResponse(BaseModel):
    total_letters: int
    status_breakdown: dict[str, int]
    generated_at: str


class BulkGenerateRequest(BaseModel):
    template_id: int
    employee_ids: list[int] = Field(min_length=1)
    common_field_values: dict[str, Any] = Field(default_factory=dict)
    signature_id: int | None = None
    use_latest_signature: bool = True
    initiated_by: str = ""


class BulkSendRequest(BaseModel):
    letter_ids: list[int] = Field(min_length=1)
    initiated_by: str = ""


class BulkRetryRequest(BaseModel):
    item_ids: list[int] | None = None


class BulkItemResponse(BaseModel):
    id: int
    position: int
    item_key: int
    state: str
    employee_id: int | None
    employee_name: str
    letter_id: int | None
    letter_number: str
    preview_path: str
    error_kind: str
    error_message: str
    attempts: int
    finished_at: str | None


class BulkOperationResponse(BaseModel):
    id: int
    operation_type: str
    template_id: int | None
    status: str
    total_items: int
    completed_items: int
    failed_items: int
    initiated_by: str
    error: str
    started_at: str | None
    completed_at: str | None


class BulkStatusResponse(BulkOperationResponse):
    progress_percentage: float
    items: list[BulkItemResponse] = Field(default_factory=list)


class BulkCancelResponse(BaseModel):
    operation_id: int
    cancelled: bool


class BulkStatsResponse(BaseModel):
    total_operations: int
    completed_operations: int
    cancelled_operations: int
    running_operations: int
    items_processed: int
    items_succeeded: int
    items_failed: int
    success_rate: float
    operations_by_type: dict[str, int]
    last_started_at: str | None
