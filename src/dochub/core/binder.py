from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from dochub.db.models import Employee, TemplateField
from dochub.errors import InvalidFieldValue, MissingRequiredField, UnknownField
from dochub.types import BoundField, BoundFields

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TRUE_VALUES = {"true", "yes", "y", "1"}
_FALSE_VALUES = {"false", "no", "n", "0"}


def normalize_field_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def employee_attributes(employee: Employee) -> dict[str, str]:
    """Employee values keyed by normalised field name."""
    joining = employee.joining_date.isoformat() if employee.joining_date else ""
    values = {
        "employeeid": employee.employee_code,
        "employeecode": employee.employee_code,
        "name": employee.full_name,
        "employeename": employee.full_name,
        "fullname": employee.full_name,
        "firstname": employee.first_name,
        "middlename": employee.middle_name,
        "lastname": employee.last_name,
        "email": employee.email,
        "employeeemail": employee.email,
        "phone": employee.phone,
        "phonenumber": employee.phone,
        "department": employee.department,
        "designation": employee.designation,
        "joiningdate": joining,
        "dateofjoining": joining,
    }
    for key, value in (employee.attributes_json or {}).items():
        if value is not None:
            values.setdefault(normalize_field_name(key), str(value))
    return {key: value for key, value in values.items() if value}


def coerce_value(field: TemplateField, value: Any) -> str:
    data_type = field.data_type or "Text"
    if data_type == "Number":
        if isinstance(value, bool):
            raise InvalidFieldValue(field.field_name, data_type, value)
        try:
            number = Decimal(str(value).replace(",", "").strip())
        except InvalidOperation as exc:
            raise InvalidFieldValue(field.field_name, data_type, value) from exc
        if not number.is_finite():
            raise InvalidFieldValue(field.field_name, data_type, value)
        if number == number.to_integral_value():
            return str(number.quantize(Decimal(1)))
        return str(number.normalize())

    if data_type == "Date":
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        try:
            return date.fromisoformat(str(value).strip()).isoformat()
        except ValueError as exc:
            raise InvalidFieldValue(field.field_name, data_type, value) from exc

    if data_type == "Boolean":
        if isinstance(value, bool):
            return "Yes" if value else "No"
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return "Yes"
        if text in _FALSE_VALUES:
            return "No"
        raise InvalidFieldValue(field.field_name, data_type, value)

    if data_type == "Email":
        text = str(value).strip()
        if not _EMAIL_RE.match(text):
            raise InvalidFieldValue(field.field_name, data_type, value)
        return text

    return str(value)


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and value.strip() == "")


class FieldBinder:
    """Merges caller values, employee data and template defaults for one letter.

    Precedence is explicit value, then employee attribute, then field default.
    Keys not declared by the template are rejected before anything is bound.
    """

    def bind(
        self,
        fields: list[TemplateField],
        employee: Employee,
        field_values: dict[str, Any] | None = None,
    ) -> BoundFields:
        by_name = {item.field_name: item for item in fields}
        by_normalized = {normalize_field_name(item.field_name): item for item in fields}

        explicit: dict[str, Any] = {}
        unknown: list[str] = []
        for key, value in (field_values or {}).items():
            target = by_name.get(key) or by_normalized.get(normalize_field_name(key))
            if target is None:
                unknown.append(key)
                continue
            explicit[target.field_name] = value
        if unknown:
            raise UnknownField(unknown)

        attributes = employee_attributes(employee)
        bound: list[BoundField] = []
        for item in sorted(fields, key=lambda f: (f.sort_order, f.field_name)):
            data_type = item.data_type if item.data_type in {"Text", "Number", "Date", "Boolean", "Email"} else "Text"
            if _present(explicit.get(item.field_name)):
                raw, source = explicit[item.field_name], "explicit"
            elif normalize_field_name(item.field_name) in attributes:
                raw, source = attributes[normalize_field_name(item.field_name)], "employee"
            elif _present(item.default_value):
                raw, source = item.default_value, "default"
            elif item.is_required:
                raise MissingRequiredField(item.field_name)
            else:
                bound.append(BoundField(name=item.field_name, value="", source="default", data_type=data_type))
                continue

            bound.append(
                BoundField(name=item.field_name, value=coerce_value(item, raw), source=source, data_type=data_type)
            )

        return BoundFields(fields=bound)
