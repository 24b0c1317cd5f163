from pathlib import Path

from sqlalchemy import func, select

from dochub.config import get_settings
from dochub.core.generator import LetterGenerator
from dochub.core.sequence import LetterNumberIssuer
from dochub.core.status_tracker import StatusTracker
from dochub.db.models import GeneratedLetter, LetterStatusHistory
from dochub.db.repositories import Repository
from dochub.db.session import SessionLocal
from dochub.types import GenerateLetterRequest, SignaturePolicy

from conftest import SelectiveFailRenderer


def _letter_count(db) -> int:
    return db.scalar(select(func.count(GeneratedLetter.id)))


def test_missing_required_field_persists_nothing(workflow) -> None:
    with SessionLocal() as db:
        result = LetterGenerator(db).generate(
            GenerateLetterRequest(template_id=workflow.template_id, employee_id=workflow.employee_ids[0])
        )

        assert not result.ok
        assert result.error.kind == "MissingRequiredField"
        assert result.error.to_dict()["field"] == "Amount"
        assert _letter_count(db) == 0
        assert db.scalar(select(func.count(LetterStatusHistory.id))) == 0
        assert LetterNumberIssuer().current("Offer Letter") == 0


def test_generate_returns_numbered_letter_with_history(workflow) -> None:
    with SessionLocal() as db:
        generator = LetterGenerator(db)
        first = generator.generate(
            GenerateLetterRequest(
                template_id=workflow.template_id,
                employee_id=workflow.employee_ids[0],
                field_values={"Amount": "500"},
            )
        ).unwrap()
        second = generator.generate(
            GenerateLetterRequest(
                template_id=workflow.template_id,
                employee_id=workflow.employee_ids[1],
                field_values={"Amount": "750"},
            )
        ).unwrap()

        assert first.status == "Generated"
        assert first.letter_number == "OFFERLETTER-000001"
        assert second.sequence_number > first.sequence_number
        assert first.signature_id == workflow.signature_id
        assert first.bound_fields_json == {"EmployeeName": "Alice Tester", "Amount": "500", "Designation": "Associate"}

        content = Path(first.file_path).read_text(encoding="utf-8")
        assert Path(first.file_path).parent == get_settings().letters_dir
        assert "Dear Alice Tester" in content
        assert "Your offer is 500 as Associate." in content

        history = StatusTracker(db).history(first.id).unwrap()
        assert [(row.from_status, row.to_status) for row in history] == [("", "Generated")]


def test_render_failure_persists_nothing(workflow) -> None:
    with SessionLocal() as db:
        result = LetterGenerator(db, renderer=SelectiveFailRenderer({"Alice"})).generate(
            GenerateLetterRequest(
                template_id=workflow.template_id,
                employee_id=workflow.employee_ids[0],
                field_values={"Amount": "500"},
            )
        )

        assert result.error.kind == "RenderFailure"
        assert _letter_count(db) == 0
        assert LetterNumberIssuer().current("Offer Letter") == 0


def test_inactive_template_and_employee_are_not_found(workflow) -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        employee = repo.create_employee(employee_code="E9", first_name="Gone", is_active=False)
        generator = LetterGenerator(db)

        result = generator.generate(
            GenerateLetterRequest(template_id=workflow.template_id, employee_id=employee.id, field_values={"Amount": 1})
        )
        assert result.error.kind == "NotFound"

        repo.set_template_active(workflow.template_id, False)
        result = generator.generate(
            GenerateLetterRequest(
                template_id=workflow.template_id,
                employee_id=workflow.employee_ids[0],
                field_values={"Amount": 1},
            )
        )
        assert result.error.kind == "NotFound"
        assert "active template" in result.error.message

        missing = generator.generate(GenerateLetterRequest(template_id=999, employee_id=workflow.employee_ids[0]))
        assert missing.error.to_dict()["entity"] == "template"


def test_latest_active_signature_used_unless_explicit(workflow) -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        newer = repo.create_signature(signature_name="CEO", authority_name="Kiran Rao")
        generator = LetterGenerator(db)
        request = {"template_id": workflow.template_id, "employee_id": workflow.employee_ids[0], "field_values": {"Amount": 1}}

        implicit = generator.generate(GenerateLetterRequest(**request)).unwrap()
        explicit = generator.generate(GenerateLetterRequest(**request, signature_id=workflow.signature_id)).unwrap()

        assert implicit.signature_id == newer.id
        assert explicit.signature_id == workflow.signature_id


def test_no_signature_available(workflow) -> None:
    with SessionLocal() as db:
        for signature in Repository(db).list_signatures():
            signature.is_active = False
        db.commit()

        result = LetterGenerator(db).generate(
            GenerateLetterRequest(
                template_id=workflow.template_id,
                employee_id=workflow.employee_ids[0],
                field_values={"Amount": 1},
            )
        )
        assert result.error.kind == "NoSignatureAvailable"


def test_generate_without_latest_signature_fallback(workflow) -> None:
    with SessionLocal() as db:
        result = LetterGenerator(db).generate(
            GenerateLetterRequest(
                template_id=workflow.template_id,
                employee_id=workflow.employee_ids[0],
                use_latest_signature=False,
                field_values={"Amount": 1},
            )
        )
        assert result.error.kind == "NoSignatureAvailable"
        assert _letter_count(db) == 0


def test_preview_writes_file_without_letter(workflow) -> None:
    with SessionLocal() as db:
        preview = LetterGenerator(db).preview(
            template_id=workflow.template_id,
            employee_id=workflow.employee_ids[1],
            signature=SignaturePolicy(),
            field_values={"Amount": "900"},
        ).unwrap()

        assert preview.employee_name == "Bob Tester"
        assert Path(preview.path).parent == get_settings().previews_dir
        assert "900" in Path(preview.path).read_text(encoding="utf-8")
        assert _letter_count(db) == 0
        assert LetterNumberIssuer().current("Offer Letter") == 0
