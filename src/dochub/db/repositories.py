from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from dochub.db.base import utcnow
from dochub.db.models import (
    BulkOperation,
    BulkOperationItem,
    DigitalSignature,
    Employee,
    GeneratedLetter,
    LetterStatusHistory,
    LetterTemplate,
    TemplateField,
)


class Repository:
    def __init__(self, session: Session):
        self.session = session

    # templates

    def create_template(
        self,
        *,
        name: str,
        letter_type: str,
        template_content: str,
        fields: list[dict[str, Any]] | None = None,
        description: str = "",
        data_source: str = "upload",
        is_active: bool = True,
    ) -> LetterTemplate:
        template = LetterTemplate(
            name=name,
            letter_type=letter_type,
            template_content=template_content,
            description=description,
            data_source=data_source,
            is_active=is_active,
        )
        self.session.add(template)
        self.session.flush()
        for idx, values in enumerate(fields or []):
            self.session.add(
                TemplateField(
                    template_id=template.id,
                    field_name=values["field_name"],
                    display_name=values.get("display_name") or values["field_name"],
                    data_type=values.get("data_type", "Text"),
                    is_required=bool(values.get("is_required", False)),
                    default_value=values.get("default_value"),
                    sort_order=int(values.get("sort_order", idx)),
                )
            )
        self.session.commit()
        self.session.refresh(template)
        return template

    def get_template(self, template_id: int) -> LetterTemplate | None:
        return self.session.get(LetterTemplate, template_id)

    def list_templates(self, active_only: bool = False) -> list[LetterTemplate]:
        statement = select(LetterTemplate).order_by(LetterTemplate.sort_order.asc(), LetterTemplate.id.asc())
        if active_only:
            statement = statement.where(LetterTemplate.is_active.is_(True))
        return list(self.session.scalars(statement).all())

    def list_template_fields(self, template_id: int) -> list[TemplateField]:
        statement = (
            select(TemplateField)
            .where(TemplateField.template_id == template_id)
            .order_by(TemplateField.sort_order.asc(), TemplateField.field_name.asc())
        )
        return list(self.session.scalars(statement).all())

    def set_template_active(self, template_id: int, is_active: bool) -> LetterTemplate:
        template = self.session.get(LetterTemplate, template_id)
        if not template:
            raise ValueError(f"template {template_id} not found")
        template.is_active = is_active
        self.session.commit()
        self.session.refresh(template)
        return template

    # employees

    def create_employee(
        self,
        *,
        employee_code: str,
        first_name: str,
        last_name: str = "",
        email: str = "",
        middle_name: str = "",
        phone: str = "",
        department: str = "",
        designation: str = "",
        joining_date: date | None = None,
        is_active: bool = True,
        attributes: dict[str, Any] | None = None,
    ) -> Employee:
        employee = Employee(
            employee_code=employee_code,
            first_name=first_name,
            middle_name=middle_name,
            last_name=last_name,
            email=email,
            phone=phone,
            department=department,
            designation=designation,
            joining_date=joining_date,
            is_active=is_active,
            attributes_json=attributes or {},
        )
        self.session.add(employee)
        self.session.commit()
        self.session.refresh(employee)
        return employee

    def get_employee(self, employee_id: int) -> Employee | None:
        return self.session.get(Employee, employee_id)

    def list_employees(self, active_only: bool = False) -> list[Employee]:
        statement = select(Employee).order_by(Employee.id.asc())
        if active_only:
            statement = statement.where(Employee.is_active.is_(True))
        return list(self.session.scalars(statement).all())

    # signatures

    def create_signature(
        self,
        *,
        signature_name: str,
        authority_name: str,
        authority_designation: str = "",
        image_path: str = "",
        image_data: bytes | None = None,
        image_mime: str = "image/png",
        is_active: bool = True,
        sort_order: int = 0,
    ) -> DigitalSignature:
        signature = DigitalSignature(
            signature_name=signature_name,
            authority_name=authority_name,
            authority_designation=authority_designation,
            image_path=image_path,
            image_data=image_data,
            image_mime=image_mime,
            is_active=is_active,
            sort_order=sort_order,
        )
        self.session.add(signature)
        self.session.commit()
        self.session.refresh(signature)
        return signature

    def get_signature(self, signature_id: int) -> DigitalSignature | None:
        return self.session.get(DigitalSignature, signature_id)

    def get_latest_active_signature(self) -> DigitalSignature | None:
        statement = (
            select(DigitalSignature)
            .where(DigitalSignature.is_active.is_(True))
            .order_by(DigitalSignature.created_at.desc(), DigitalSignature.id.desc())
            .limit(1)
        )
        return self.session.scalar(statement)

    def list_signatures(self, active_only: bool = False) -> list[DigitalSignature]:
        statement = select(DigitalSignature).order_by(DigitalSignature.sort_order.asc(), DigitalSignature.id.asc())
        if active_only:
            statement = statement.where(DigitalSignature.is_active.is_(True))
        return list(self.session.scalars(statement).all())

    # generated letters

    def add_letter(self, letter: GeneratedLetter, initial_history: LetterStatusHistory) -> GeneratedLetter:
        self.session.add(letter)
        self.session.flush()
        initial_history.letter_id = letter.id
        self.session.add(initial_history)
        self.session.commit()
        self.session.refresh(letter)
        return letter

    def get_letter(self, letter_id: int) -> GeneratedLetter | None:
        return self.session.get(GeneratedLetter, letter_id)

    def get_letter_by_message_id(self, message_id: str) -> GeneratedLetter | None:
        if not message_id:
            return None
        statement = select(GeneratedLetter).where(GeneratedLetter.email_message_id == message_id)
        return self.session.scalar(statement)

    def list_letters(
        self,
        *,
        status: str | None = None,
        employee_id: int | None = None,
        template_id: int | None = None,
        limit: int = 100,
    ) -> list[GeneratedLetter]:
        statement = select(GeneratedLetter)
        if status:
            statement = statement.where(GeneratedLetter.status == status)
        if employee_id is not None:
            statement = statement.where(GeneratedLetter.employee_id == employee_id)
        if template_id is not None:
            statement = statement.where(GeneratedLetter.template_id == template_id)
        statement = statement.order_by(GeneratedLetter.id.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    def letter_status_counts(self) -> dict[str, int]:
        statement = select(GeneratedLetter.status, func.count(GeneratedLetter.id)).group_by(GeneratedLetter.status)
        return {status: count for status, count in self.session.execute(statement).all()}

    def list_status_history(self, letter_id: int) -> list[LetterStatusHistory]:
        statement = (
            select(LetterStatusHistory)
            .where(LetterStatusHistory.letter_id == letter_id)
            .order_by(LetterStatusHistory.changed_at.asc(), LetterStatusHistory.id.asc())
        )
        return list(self.session.scalars(statement).all())

    # bulk operations

    def create_bulk_operation(
        self,
        *,
        operation_type: str,
        template_id: int | None,
        item_ids: list[int],
        request_json: dict[str, Any],
        initiated_by: str,
    ) -> BulkOperation:
        operation = BulkOperation(
            operation_type=operation_type,
            template_id=template_id,
            status="Running",
            total_items=len(item_ids),
            request_json=request_json,
            initiated_by=initiated_by,
            started_at=utcnow(),
        )
        self.session.add(operation)
        self.session.flush()
        for position, item_key in enumerate(item_ids):
            self.session.add(
                BulkOperationItem(
                    operation_id=operation.id,
                    position=position,
                    item_key=item_key,
                    employee_id=item_key if operation_type != "send-email" else None,
                    letter_id=item_key if operation_type == "send-email" else None,
                )
            )
        self.session.commit()
        self.session.refresh(operation)
        return operation

    def get_bulk_operation(self, operation_id: int) -> BulkOperation | None:
        return self.session.get(BulkOperation, operation_id)

    def claim_bulk_retry(self, operation_id: int, *, stale_before: datetime) -> bool:
        """Stamps the operation as being retried unless a retry started after ``stale_before`` holds it."""
        statement = (
            update(BulkOperation)
            .where(
                BulkOperation.id == operation_id,
                BulkOperation.status != "Running",
                or_(BulkOperation.retry_started_at.is_(None), BulkOperation.retry_started_at < stale_before),
            )
            .values(retry_started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        claimed = self.session.execute(statement).rowcount == 1
        self.session.commit()
        return claimed

    def release_bulk_retry(self, operation_id: int) -> None:
        self.session.execute(
            update(BulkOperation)
            .where(BulkOperation.id == operation_id)
            .values(retry_started_at=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def list_bulk_items(self, operation_id: int, states: set[str] | None = None) -> list[BulkOperationItem]:
        statement = select(BulkOperationItem).where(BulkOperationItem.operation_id == operation_id)
        if states:
            statement = statement.where(BulkOperationItem.state.in_(sorted(states)))
        statement = statement.order_by(BulkOperationItem.position.asc())
        return list(self.session.scalars(statement).all())

    def list_bulk_operations(
        self,
        *,
        operation_type: str | None = None,
        status: str | None = None,
        initiated_by: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[BulkOperation]:
        conditions = []
        if operation_type:
            conditions.append(BulkOperation.operation_type == operation_type)
        if status:
            conditions.append(BulkOperation.status == status)
        if initiated_by:
            conditions.append(BulkOperation.initiated_by == initiated_by)

        statement = select(BulkOperation)
        if conditions:
            statement = statement.where(and_(*conditions))
        statement = (
            statement.order_by(BulkOperation.id.desc())
            .offset(max(page - 1, 0) * page_size)
            .limit(page_size)
        )
        return list(self.session.scalars(statement).all())

    def bulk_operation_stats(self) -> dict[str, Any]:
        by_status = dict(
            self.session.execute(
                select(BulkOperation.status, func.count(BulkOperation.id)).group_by(BulkOperation.status)
            ).all()
        )
        by_type = dict(
            self.session.execute(
                select(BulkOperation.operation_type, func.count(BulkOperation.id)).group_by(
                    BulkOperation.operation_type
                )
            ).all()
        )
        completed_items, failed_items = self.session.execute(
            select(
                func.coalesce(func.sum(BulkOperation.completed_items), 0),
                func.coalesce(func.sum(BulkOperation.failed_items), 0),
            )
        ).one()
        last_started = self.session.scalar(select(func.max(BulkOperation.started_at)))
        return {
            "by_status": by_status,
            "by_type": by_type,
            "completed_items": int(completed_items),
            "failed_items": int(failed_items),
            "last_started_at": last_started,
        }
