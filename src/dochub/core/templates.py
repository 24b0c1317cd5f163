from __future__ import annotations

from dataclasses import dataclass, field

from dochub.db.models import LetterTemplate, TemplateField
from dochub.db.repositories import Repository
from dochub.errors import NotFound, ValidationError


@dataclass(slots=True)
class ResolvedTemplate:
    template: LetterTemplate
    fields: list[TemplateField] = field(default_factory=list)

    @property
    def letter_type(self) -> str:
        return self.template.letter_type

    @property
    def field_names(self) -> list[str]:
        return [item.field_name for item in self.fields]


class TemplateResolver:
    def __init__(self, repo: Repository):
        self.repo = repo

    def resolve(self, template_id: int) -> ResolvedTemplate:
        template = self.repo.get_template(template_id)
        if template is None:
            raise NotFound("template", template_id)
        if not template.is_active:
            raise NotFound("active template", template_id)
        if not template.template_content.strip():
            raise ValidationError(f"template {template_id} has no content", template_id=template_id)
        return ResolvedTemplate(template=template, fields=self.repo.list_template_fields(template_id))
