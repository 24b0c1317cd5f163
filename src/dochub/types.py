from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

LetterStatus = Literal["Generated", "Sent", "Delivered", "Failed"]
BulkOperationType = Literal["generate", "preview", "send-email"]
BulkOperationStatus = Literal["Running", "Completed", "Cancelled"]
BulkItemState = Literal["pending", "succeeded", "failed", "skipped"]
FieldDataType = Literal["Text", "Number", "Date", "Boolean", "Email"]
TemplateDataSource = Literal["upload", "database"]

LETTER_STATUSES: tuple[str, ...] = ("Generated", "Sent", "Delivered", "Failed")


class BoundField(BaseModel):
    name: str
    value: str
    source: Literal["explicit", "employee", "default"]
    data_type: FieldDataType = "Text"


class BoundFields(BaseModel):
    fields: list[BoundField] = Field(default_factory=list)

    def as_dict(self) -> dict[str, str]:
        return {item.name: item.value for item in self.fields}

    def sources(self) -> dict[str, str]:
        return {item.name: item.source for item in self.fields}


class GenerateLetterRequest(BaseModel):
    template_id: int
    employee_id: int
    signature_id: int | None = None
    use_latest_signature: bool = True
    field_values: dict[str, Any] = Field(default_factory=dict)
    actor: str = ""


class SignaturePolicy(BaseModel):
    signature_id: int | None = None
    use_latest: bool = True


class BulkRequest(BaseModel):
    operation_type: BulkOperationType
    template_id: int | None = None
    item_ids: list[int] = Field(default_factory=list)
    common_field_values: dict[str, Any] = Field(default_factory=dict)
    signature: SignaturePolicy = Field(default_factory=SignaturePolicy)
    initiated_by: str = ""

    @field_validator("item_ids")
    @classmethod
    def validate_item_ids(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("at least one item id is required")
        return list(dict.fromkeys(value))


class ItemOutcome(BaseModel):
    success: bool
    employee_id: int | None = None
    employee_name: str = ""
    letter_id: int | None = None
    letter_number: str = ""
    preview_path: str = ""
    error_kind: str = ""
    error_message: str = ""


class RetryResult(BaseModel):
    operation_id: int | None = None
    letter_id: int | None = None
    total_retried: int = 0
    succeeded: int = 0
    failed: int = 0
    retried_item_ids: list[int] = Field(default_factory=list)
    skipped_item_ids: list[int] = Field(default_factory=list)
    letter_status: str = ""
    retry_count: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class BatchStatusItem(BaseModel):
    letter_id: int
    success: bool
    from_status: str = ""
    to_status: str = ""
    error_kind: str = ""
    error_message: str = ""


class BatchStatusResult(BaseModel):
    success: bool
    updated: int = 0
    failed: int = 0
    items: list[BatchStatusItem] = Field(default_factory=list)


class DeliveryEvent(BaseModel):
    event: str
    sg_message_id: str = ""
    email: str = ""
    reason: str = ""
    timestamp: int | None = None

    @property
    def message_id(self) -> str:
        # SendGrid appends ".filter..." routing suffixes to the id it returned on send
        return self.sg_message_id.split(".", 1)[0]


class DeliveryEventResult(BaseModel):
    processed: int = 0
    ignored: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)
