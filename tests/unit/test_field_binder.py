from datetime import date

import pytest

from dochub.core.binder import FieldBinder, employee_attributes, normalize_field_name
from dochub.db.models import Employee, TemplateField
from dochub.errors import InvalidFieldValue, MissingRequiredField, UnknownField


def _employee(**overrides) -> Employee:
    values = {
        "employee_code": "E100",
        "first_name": "Asha",
        "middle_name": "",
        "last_name": "Verma",
        "email": "asha@example.com",
        "phone": "",
        "department": "Engineering",
        "designation": "Engineer",
        "joining_date": date(2024, 4, 1),
        "attributes_json": {"Manager Name": "Ravi"},
    }
    values.update(overrides)
    return Employee(**values)


def _field(name: str, *, data_type: str = "Text", required: bool = False, default=None, order: int = 0):
    return TemplateField(
        field_name=name,
        display_name=name,
        data_type=data_type,
        is_required=required,
        default_value=default,
        sort_order=order,
    )


def test_normalize_field_name() -> None:
    assert normalize_field_name("Employee Name") == "employeename"
    assert normalize_field_name("joining_date") == "joiningdate"


def test_employee_attributes_include_extra_attributes() -> None:
    attributes = employee_attributes(_employee())
    assert attributes["employeename"] == "Asha Verma"
    assert attributes["joiningdate"] == "2024-04-01"
    assert attributes["managername"] == "Ravi"
    assert "phone" not in attributes


def test_precedence_explicit_then_employee_then_default() -> None:
    fields = [
        _field("Department", order=0),
        _field("Designation", default="Associate", order=1),
        _field("Location", default="Pune", order=2),
    ]
    bound = FieldBinder().bind(fields, _employee(), {"Department": "Finance"})

    assert bound.as_dict() == {"Department": "Finance", "Designation": "Engineer", "Location": "Pune"}
    assert bound.sources() == {"Department": "explicit", "Designation": "employee", "Location": "default"}


def test_blank_explicit_value_falls_through() -> None:
    bound = FieldBinder().bind([_field("Department")], _employee(), {"Department": "  "})
    assert bound.as_dict() == {"Department": "Engineering"}


def test_missing_required_field_names_the_field() -> None:
    with pytest.raises(MissingRequiredField) as excinfo:
        FieldBinder().bind([_field("Amount", data_type="Number", required=True)], _employee(), {})
    assert excinfo.value.field_name == "Amount"
    assert excinfo.value.to_dict()["field"] == "Amount"


def test_optional_field_without_value_binds_empty() -> None:
    bound = FieldBinder().bind([_field("Remarks")], _employee(), None)
    assert bound.as_dict() == {"Remarks": ""}


def test_unknown_explicit_key_rejected() -> None:
    with pytest.raises(UnknownField) as excinfo:
        FieldBinder().bind([_field("Amount")], _employee(), {"Amount": "1", "Bonus": "2"})
    assert excinfo.value.context["fields"] == ["Bonus"]


def test_explicit_key_matched_on_normalised_name() -> None:
    bound = FieldBinder().bind([_field("Joining Date", data_type="Date")], _employee(), {"joining_date": "2025-01-02"})
    assert bound.as_dict() == {"Joining Date": "2025-01-02"}


@pytest.mark.parametrize(
    ("data_type", "raw", "expected"),
    [
        ("Number", "1,500", "1500"),
        ("Number", "12.50", "12.5"),
        ("Boolean", "yes", "Yes"),
        ("Boolean", False, "No"),
        ("Date", date(2025, 3, 9), "2025-03-09"),
        ("Email", " hr@example.com ", "hr@example.com"),
    ],
)
def test_values_coerced_per_data_type(data_type: str, raw, expected: str) -> None:
    bound = FieldBinder().bind([_field("Value", data_type=data_type)], _employee(), {"Value": raw})
    assert bound.as_dict()["Value"] == expected


@pytest.mark.parametrize(
    ("data_type", "raw"),
    [("Number", "five hundred"), ("Date", "09/03/2025"), ("Boolean", "maybe"), ("Email", "not-an-email")],
)
def test_invalid_values_rejected(data_type: str, raw: str) -> None:
    with pytest.raises(InvalidFieldValue):
        FieldBinder().bind([_field("Value", data_type=data_type)], _employee(), {"Value": raw})


def test_bound_fields_ordered_by_sort_order_then_name() -> None:
    fields = [_field("Zeta", default="z", order=0), _field("Beta", default="b", order=1), _field("Alpha", default="a", order=1)]
    bound = FieldBinder().bind(fields, _employee(), {})
    assert [item.name for item in bound.fields] == ["Zeta", "Alpha", "Beta"]
