from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from dochub.db.base import Base, TimestampMixin


class LetterTemplate(TimestampMixin, Base):
    __tablename__ = "letter_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    letter_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    template_content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    data_source: Mapped[str] = mapped_column(String(40), default="upload", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class TemplateField(TimestampMixin, Base):
    __tablename__ = "template_fields"
    __table_args__ = (UniqueConstraint("template_id", "field_name", name="uq_template_field"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(ForeignKey("letter_templates.id", ondelete="CASCADE"), index=True)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    data_type: Mapped[str] = mapped_column(String(50), default="Text", nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Employee(TimestampMixin, Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    middle_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    phone: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    department: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    designation: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    joining_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    attributes_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(part for part in parts if part)


class DigitalSignature(TimestampMixin, Base):
    __tablename__ = "digital_signatures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    signature_name: Mapped[str] = mapped_column(String(100), nullable=False)
    authority_name: Mapped[str] = mapped_column(String(100), nullable=False)
    authority_designation: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    image_path: Mapped[str] = mapped_column(String(600), default="", nullable=False)
    image_data: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    image_mime: Mapped[str] = mapped_column(String(80), default="image/png", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class LetterSequence(Base):
    __tablename__ = "letter_sequences"

    letter_type: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class GeneratedLetter(TimestampMixin, Base):
    __tablename__ = "generated_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    letter_number: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    letter_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    template_id: Mapped[int] = mapped_column(ForeignKey("letter_templates.id"), index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), index=True)
    signature_id: Mapped[int | None] = mapped_column(ForeignKey("digital_signatures.id"), nullable=True)
    file_path: Mapped[str] = mapped_column(String(600), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(40), default="Generated", nullable=False, index=True)
    bound_fields_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_message_id: Mapped[str] = mapped_column(String(255), default="", nullable=False, index=True)
    error_message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class LetterStatusHistory(Base):
    __tablename__ = "letter_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    letter_id: Mapped[int] = mapped_column(ForeignKey("generated_letters.id", ondelete="CASCADE"), index=True)
    from_status: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    to_status: Mapped[str] = mapped_column(String(40), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), default="System", nullable=False)
    notes: Mapped[str] = mapped_column(String(500), default="", nullable=False)


class BulkOperation(TimestampMixin, Base):
    __tablename__ = "bulk_operations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    template_id: Mapped[int | None] = mapped_column(ForeignKey("letter_templates.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(40), default="Running", nullable=False, index=True)
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    request_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    initiated_by: Mapped[str] = mapped_column(String(100), default="System", nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str] = mapped_column(Text, default="", nullable=False)
    retry_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BulkOperationItem(TimestampMixin, Base):
    __tablename__ = "bulk_operation_items"
    __table_args__ = (UniqueConstraint("operation_id", "position", name="uq_bulk_item_position"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_id: Mapped[int] = mapped_column(ForeignKey("bulk_operations.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    item_key: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(40), default="pending", nullable=False)
    employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    employee_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    letter_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    letter_number: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    preview_path: Mapped[str] = mapped_column(String(600), default="", nullable=False)
    error_kind: Mapped[str] = mapped_column(String(80), default="", nullable=False)
    error_message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
