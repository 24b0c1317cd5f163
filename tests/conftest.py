from __future__ import annotations

import itertools
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="dochub-tests-"))
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'dochub_test.db'}"
os.environ["DATA_DIR"] = str(_TEST_ROOT)
os.environ["LETTERS_DIR"] = str(_TEST_ROOT / "letters")
os.environ["PREVIEWS_DIR"] = str(_TEST_ROOT / "previews")
os.environ["SIGNATURES_DIR"] = str(_TEST_ROOT / "signatures")
os.environ["OUTBOX_DIR"] = str(_TEST_ROOT / "outbox")
os.environ["EMAIL_PROVIDER"] = "outbox"
os.environ["BULK_MAX_WORKERS"] = "3"
os.environ["MAX_SEND_RETRIES"] = "3"

import pytest  # noqa: E402

from dochub.db.base import Base  # noqa: E402
from dochub.db.repositories import Repository  # noqa: E402
from dochub.db.session import SessionLocal, engine  # noqa: E402
from dochub.errors import DispatchFailure, RenderFailure  # noqa: E402
from dochub.rendering.renderer import JinjaDocumentRenderer  # noqa: E402

OFFER_TEMPLATE = "<p>Dear {{ EmployeeName }},</p><p>Your offer is {{ Amount }} as {Designation}.</p>"


@dataclass
class Workflow:
    template_id: int
    signature_id: int
    employee_ids: list[int]


class FakeDispatcher:
    def __init__(self, fail_for: set[str] | None = None):
        self.fail_for = set(fail_for or ())
        self.sent: list[dict] = []
        self._ids = itertools.count(1)

    def send(self, *, to, subject, body, attachments, timeout) -> str:
        if to in self.fail_for:
            raise DispatchFailure(f"mailbox unavailable: {to}")
        message_id = f"msg-{next(self._ids)}"
        self.sent.append({"to": to, "subject": subject, "body": body, "attachments": attachments, "id": message_id})
        return message_id


class SelectiveFailRenderer(JinjaDocumentRenderer):
    """Fails for any document whose title mentions one of ``fail_names``."""

    def __init__(self, fail_names: set[str]):
        super().__init__()
        self.fail_names = fail_names

    def render(self, template_content, fields, signature, *, title=""):
        if any(name in title for name in self.fail_names):
            raise RenderFailure(f"renderer crashed for {title}")
        return super().render(template_content, fields, signature, title=title)


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def workflow() -> Workflow:
    with SessionLocal() as db:
        repo = Repository(db)
        template = repo.create_template(
            name="Offer",
            letter_type="Offer Letter",
            template_content=OFFER_TEMPLATE,
            fields=[
                {"field_name": "EmployeeName", "is_required": True},
                {"field_name": "Amount", "data_type": "Number", "is_required": True},
                {"field_name": "Designation", "default_value": "Associate"},
            ],
        )
        signature = repo.create_signature(
            signature_name="HR",
            authority_name="Priya Nair",
            authority_designation="Head of HR",
            image_data=b"\x89PNG fake",
        )
        employees = [
            repo.create_employee(
                employee_code=f"E{index}",
                first_name=name,
                last_name="Tester",
                email=f"{name.lower()}@example.com",
            )
            for index, name in enumerate(["Alice", "Bob", "Carol"], start=1)
        ]
        return Workflow(
            template_id=template.id,
            signature_id=signature.id,
            employee_ids=[employee.id for employee in employees],
        )
