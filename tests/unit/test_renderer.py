import pytest

from dochub.core.signatures import SignatureImage
from dochub.errors import RenderFailure
from dochub.rendering.renderer import JinjaDocumentRenderer, convert_legacy_placeholders


def _signature(data: bytes = b"png-bytes") -> SignatureImage:
    return SignatureImage(
        signature_id=1,
        authority_name="Priya Nair",
        authority_designation="Head of HR",
        data=data,
        mime_type="image/png",
    )


def test_legacy_placeholders_rewritten() -> None:
    converted = convert_legacy_placeholders("Hello {Employee Name}, {{ Amount }}")
    assert converted == "Hello {{ fields['Employee Name'] }}, {{ Amount }}"


def test_render_embeds_fields_and_signature() -> None:
    html = JinjaDocumentRenderer().render(
        "<p>Dear {{ EmployeeName }}, amount {Amount}.</p>",
        {"EmployeeName": "Asha", "Amount": "500"},
        _signature(),
        title="Offer",
    ).decode("utf-8")

    assert "Dear Asha, amount 500." in html
    assert "data:image/png;base64," in html
    assert "Priya Nair" in html
    assert "Head of HR" in html
    assert "<title>Offer</title>" in html


def test_field_values_are_escaped() -> None:
    html = JinjaDocumentRenderer().render("{{ Name }}", {"Name": "<script>"}, None).decode("utf-8")
    assert "&lt;script&gt;" in html
    assert "<script>" not in html


def test_signature_without_image_still_lists_authority() -> None:
    html = JinjaDocumentRenderer().render("body", {}, _signature(data=b"")).decode("utf-8")
    assert "Priya Nair" in html
    assert "<img" not in html


def test_undefined_placeholder_is_render_failure() -> None:
    with pytest.raises(RenderFailure) as excinfo:
        JinjaDocumentRenderer().render("{{ Missing }}", {}, None)
    assert "Missing" in excinfo.value.message


def test_template_syntax_error_is_render_failure() -> None:
    with pytest.raises(RenderFailure):
        JinjaDocumentRenderer().render("{% if %}", {}, None)


def test_templates_cannot_reach_python_internals() -> None:
    with pytest.raises(RenderFailure, match="restricted operation"):
        JinjaDocumentRenderer().render("{{ cycler.__init__.__globals__.os.getcwd() }}", {}, None)


def test_dunder_attributes_on_field_values_are_blocked() -> None:
    with pytest.raises(RenderFailure):
        JinjaDocumentRenderer().render("{{ Name.__class__.__mro__ }}", {"Name": "Asha"}, None)
