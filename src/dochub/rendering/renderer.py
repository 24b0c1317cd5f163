from __future__ import annotations

import base64
import logging
import re
from typing import Protocol

from jinja2 import StrictUndefined, TemplateError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from dochub.core.signatures import SignatureImage
from dochub.errors import RenderFailure

logger = logging.getLogger(__name__)

_LEGACY_PLACEHOLDER = re.compile(r"(?<!\{)\{\s*([A-Za-z_][A-Za-z0-9_ .-]*?)\s*\}(?!\})")

DOCUMENT_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
<style>
body { font-family: Georgia, serif; margin: 48px; line-height: 1.5; }
.signature { margin-top: 48px; }
.signature img { max-height: 80px; }
.signature p { margin: 0; }
</style>
</head>
<body>
<div class="letter-body">
{{ body | safe }}
</div>
{% if signature %}
<div class="signature">
{% if signature_src %}<img src="{{ signature_src }}" alt="Signature of {{ signature.authority_name }}">{% endif %}
<p><strong>{{ signature.authority_name }}</strong></p>
{% if signature.authority_designation %}<p>{{ signature.authority_designation }}</p>{% endif %}
</div>
{% endif %}
</body>
</html>
"""


class DocumentRenderer(Protocol):
    file_extension: str

    def render(
        self,
        template_content: str,
        fields: dict[str, str],
        signature: SignatureImage | None,
        *,
        title: str = "",
    ) -> bytes: ...


def convert_legacy_placeholders(template_content: str) -> str:
    """Rewrites ``{Field Name}`` placeholders into Jinja lookups on ``fields``."""
    return _LEGACY_PLACEHOLDER.sub(lambda match: "{{ fields[%r] }}" % match.group(1), template_content)


class JinjaDocumentRenderer:
    file_extension = ".html"

    def __init__(self) -> None:
        self.env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=True, keep_trailing_newline=True)
        self.layout = self.env.from_string(DOCUMENT_LAYOUT)

    def render(
        self,
        template_content: str,
        fields: dict[str, str],
        signature: SignatureImage | None,
        *,
        title: str = "",
    ) -> bytes:
        context = {name: value for name, value in fields.items() if name.isidentifier()}
        context["fields"] = fields
        try:
            body = self.env.from_string(convert_legacy_placeholders(template_content)).render(context)
            html = self.layout.render(
                title=title or "Letter",
                body=body,
                signature=signature,
                signature_src=_data_uri(signature),
            )
        except SecurityError as exc:
            logger.warning("Template rejected by sandbox: %s", exc)
            raise RenderFailure(f"template uses a restricted operation: {exc}") from exc
        except TemplateError as exc:
            logger.warning("Template rendering failed: %s", exc)
            raise RenderFailure(f"template rendering failed: {exc}") from exc
        return html.encode("utf-8")


def _data_uri(signature: SignatureImage | None) -> str:
    if signature is None or not signature.data:
        return ""
    encoded = base64.b64encode(signature.data).decode("ascii")
    return f"data:{signature.mime_type};base64,{encoded}"
