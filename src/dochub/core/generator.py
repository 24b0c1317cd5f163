from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from dochub.config import Settings, get_settings
from dochub.core.binder import FieldBinder
from dochub.core.sequence import LetterNumberIssuer
from dochub.core.signatures import SignatureImage, SignatureSelector
from dochub.core.status_tracker import StatusTracker
from dochub.core.templates import ResolvedTemplate, TemplateResolver
from dochub.core.timeouts import call_with_timeout
from dochub.db.base import utcnow
from dochub.db.models import DigitalSignature, Employee, GeneratedLetter
from dochub.db.repositories import Repository
from dochub.errors import LetterWorkflowError, NotFound, RenderFailure, Result
from dochub.rendering.renderer import DocumentRenderer, JinjaDocumentRenderer
from dochub.types import BoundFields, GenerateLetterRequest, SignaturePolicy

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreparedLetter:
    resolved: ResolvedTemplate
    employee: Employee
    signature: DigitalSignature
    signature_image: SignatureImage
    bound: BoundFields


@dataclass(slots=True)
class PreviewDocument:
    employee_id: int
    employee_name: str
    path: str


def safe_filename_part(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", value).strip("_") or "item"


class LetterGenerator:
    """Turns a template, an employee and a signature into a numbered, persisted letter.

    Nothing is persisted unless rendering succeeds; the letter row and its
    initial ``Generated`` history entry are written together.
    """

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        renderer: DocumentRenderer | None = None,
        issuer: LetterNumberIssuer | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session)
        self.templates = TemplateResolver(self.repo)
        self.binder = FieldBinder()
        self.signatures = SignatureSelector(self.repo)
        self.renderer = renderer or JinjaDocumentRenderer()
        self.issuer = issuer or LetterNumberIssuer()
        self.tracker = StatusTracker(session, settings=self.settings)

    def generate(self, request: GenerateLetterRequest) -> Result[GeneratedLetter]:
        try:
            return Result.success(self._generate(request))
        except LetterWorkflowError as exc:
            logger.warning(
                "Letter generation failed template_id=%s employee_id=%s kind=%s: %s",
                request.template_id,
                request.employee_id,
                exc.kind,
                exc.message,
            )
            return Result.failure(exc)

    def preview(
        self,
        *,
        template_id: int,
        employee_id: int,
        signature: SignaturePolicy,
        field_values: dict[str, Any] | None = None,
    ) -> Result[PreviewDocument]:
        try:
            prepared = self.prepare(
                template_id=template_id,
                employee_id=employee_id,
                signature=signature,
                field_values=field_values,
            )
            content = self.render(prepared)
            name = (
                f"preview_{safe_filename_part(prepared.employee.employee_code)}_{uuid4().hex[:8]}"
                f"{self.renderer.file_extension}"
            )
            path = self._write(self.settings.previews_dir / name, content)
        except LetterWorkflowError as exc:
            return Result.failure(exc)
        return Result.success(
            PreviewDocument(employee_id=employee_id, employee_name=prepared.employee.full_name, path=str(path))
        )

    def prepare(
        self,
        *,
        template_id: int,
        employee_id: int,
        signature: SignaturePolicy,
        field_values: dict[str, Any] | None = None,
    ) -> PreparedLetter:
        resolved = self.templates.resolve(template_id)
        employee = self.repo.get_employee(employee_id)
        if employee is None:
            raise NotFound("employee", employee_id)
        if not employee.is_active:
            raise NotFound("active employee", employee_id)

        selected = self.signatures.select(signature)
        bound = self.binder.bind(resolved.fields, employee, field_values)
        return PreparedLetter(
            resolved=resolved,
            employee=employee,
            signature=selected,
            signature_image=self.signatures.load_image(selected),
            bound=bound,
        )

    def render(self, prepared: PreparedLetter) -> bytes:
        return self._render(
            prepared.resolved.template.template_content,
            prepared.bound.as_dict(),
            prepared.signature_image,
            title=f"{prepared.resolved.template.name} - {prepared.employee.full_name}",
        )

    def rerender(self, letter: GeneratedLetter) -> str:
        """Renders an existing letter again from its stored field snapshot."""
        template = self.repo.get_template(letter.template_id)
        if template is None:
            raise NotFound("template", letter.template_id)
        employee = self.repo.get_employee(letter.employee_id)
        if employee is None:
            raise NotFound("employee", letter.employee_id)
        selected = self.signatures.select(SignaturePolicy(signature_id=letter.signature_id))

        content = self._render(
            template.template_content,
            dict(letter.bound_fields_json or {}),
            self.signatures.load_image(selected),
            title=f"{template.name} - {employee.full_name}",
        )
        path = Path(letter.file_path) if letter.file_path else self._letter_path(letter.letter_number, employee)
        self._write(path, content)
        logger.info("Letter %s re-rendered to %s", letter.letter_number, path)
        return str(path)

    def _generate(self, request: GenerateLetterRequest) -> GeneratedLetter:
        logger.info(
            "Generating letter template_id=%s employee_id=%s", request.template_id, request.employee_id
        )
        prepared = self.prepare(
            template_id=request.template_id,
            employee_id=request.employee_id,
            signature=SignaturePolicy(
                signature_id=request.signature_id, use_latest=request.use_latest_signature
            ),
            field_values=request.field_values,
        )
        content = self.render(prepared)

        issued = self.issuer.issue(prepared.resolved.letter_type)
        path = self._write(self._letter_path(issued.letter_number, prepared.employee), content)

        letter = GeneratedLetter(
            letter_number=issued.letter_number,
            sequence_number=issued.sequence,
            letter_type=prepared.resolved.letter_type,
            template_id=prepared.resolved.template.id,
            employee_id=prepared.employee.id,
            signature_id=prepared.signature.id,
            file_path=str(path),
            bound_fields_json=prepared.bound.as_dict(),
            generated_at=utcnow(),
        )
        try:
            saved = self.tracker.record_generated(letter, actor=request.actor)
        except Exception:
            self.session.rollback()
            path.unlink(missing_ok=True)
            raise

        logger.info("Letter generated successfully: %s", saved.letter_number)
        return saved

    def _render(
        self,
        template_content: str,
        fields: dict[str, str],
        signature: SignatureImage | None,
        *,
        title: str,
    ) -> bytes:
        return call_with_timeout(
            self.renderer.render,
            template_content,
            fields,
            signature,
            title=title,
            timeout=self.settings.render_timeout_sec,
            error_cls=RenderFailure,
            label="document render",
        )

    def _letter_path(self, letter_number: str, employee: Employee) -> Path:
        name = f"{letter_number}_{safe_filename_part(employee.employee_code)}{self.renderer.file_extension}"
        return self.settings.letters_dir / name

    def _write(self, path: Path, content: bytes) -> Path:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as exc:
            raise RenderFailure(f"could not write rendered document: {exc}") from exc
        return path
