from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from dochub.db.models import DigitalSignature, Employee, LetterTemplate
from dochub.db.repositories import Repository

DEMO_TEMPLATES: list[dict[str, object]] = [
    {
        "name": "Offer Letter",
        "letter_type": "Offer Letter",
        "template_content": (
            "<p>Dear {{ EmployeeName }},</p>\n"
            "<p>We are pleased to offer you the position of {{ Designation }} in the "
            "{{ Department }} department, starting {{ JoiningDate }}.</p>\n"
            "<p>Your annual compensation will be {{ Amount }}.</p>"
        ),
        "fields": [
            {"field_name": "EmployeeName", "display_name": "Employee Name", "is_required": True},
            {"field_name": "Designation", "is_required": True},
            {"field_name": "Department", "default_value": "Operations"},
            {"field_name": "JoiningDate", "display_name": "Joining Date", "data_type": "Date", "is_required": True},
            {"field_name": "Amount", "data_type": "Number", "is_required": True},
        ],
    },
    {
        "name": "Experience Letter",
        "letter_type": "Experience Letter",
        "template_content": (
            "<p>This is to certify that {EmployeeName} ({EmployeeId}) worked with us as "
            "{Designation} from {JoiningDate} to {RelievingDate}.</p>"
        ),
        "fields": [
            {"field_name": "EmployeeName", "is_required": True},
            {"field_name": "EmployeeId", "is_required": True},
            {"field_name": "Designation", "is_required": True},
            {"field_name": "JoiningDate", "data_type": "Date", "is_required": True},
            {"field_name": "RelievingDate", "data_type": "Date", "is_required": True},
        ],
    },
]

DEMO_EMPLOYEES: list[dict[str, object]] = [
    {
        "employee_code": "EMP001",
        "first_name": "Asha",
        "last_name": "Verma",
        "email": "asha.verma@example.com",
        "department": "Engineering",
        "designation": "Software Engineer",
        "joining_date": date(2024, 4, 1),
    },
    {
        "employee_code": "EMP002",
        "first_name": "Rahul",
        "last_name": "Mehta",
        "email": "rahul.mehta@example.com",
        "department": "Finance",
        "designation": "Analyst",
        "joining_date": date(2023, 11, 15),
    },
    {
        "employee_code": "EMP003",
        "first_name": "Neha",
        "last_name": "Iyer",
        "email": "neha.iyer@example.com",
        "department": "People",
        "designation": "HR Partner",
        "joining_date": date(2022, 7, 18),
    },
]


def seed_demo_data(session: Session) -> dict[str, int]:
    repo = Repository(session)
    inserted = {"templates": 0, "employees": 0, "signatures": 0}

    for template in DEMO_TEMPLATES:
        name = str(template["name"])
        if session.scalar(select(LetterTemplate).where(LetterTemplate.name == name)):
            continue
        repo.create_template(
            name=name,
            letter_type=str(template["letter_type"]),
            template_content=str(template["template_content"]),
            fields=list(template["fields"]),
        )
        inserted["templates"] += 1

    for employee in DEMO_EMPLOYEES:
        code = str(employee["employee_code"])
        if session.scalar(select(Employee).where(Employee.employee_code == code)):
            continue
        repo.create_employee(**employee)
        inserted["employees"] += 1

    if not session.scalar(select(DigitalSignature).limit(1)):
        repo.create_signature(
            signature_name="HR Head",
            authority_name="Priya Nair",
            authority_designation="Head of Human Resources",
        )
        inserted["signatures"] += 1

    return inserted
