from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
import uvicorn

from dochub.api.app import create_app
from dochub.config import get_settings
from dochub.core.bulk import BulkOperationCoordinator, BulkSnapshot
from dochub.core.delivery import LetterDelivery
from dochub.core.generator import LetterGenerator
from dochub.core.retry import RetryManager
from dochub.core.status_tracker import StatusTracker
from dochub.db.init import init_database
from dochub.db.models import GeneratedLetter
from dochub.db.session import SessionLocal
from dochub.errors import Result
from dochub.logging_config import configure_logging
from dochub.types import BulkRequest, GenerateLetterRequest, SignaturePolicy

app = typer.Typer(help="DocHub CLI")
letter_app = typer.Typer(help="Generate, send and track single letters")
bulk_app = typer.Typer(help="Bulk generation, preview and email runs")

app.add_typer(letter_app, name="letter")
app.add_typer(bulk_app, name="bulk")


@app.callback()
def main(log_level: str | None = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL for this run.")) -> None:
    configure_logging(log_level)


_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _unwrap(result: Result[Any]) -> Any:
    if result.error is not None:
        _echo({"ok": False, "error": result.error.to_dict()})
        raise typer.Exit(code=1)
    return result.value


def _parse_fields(values: list[str], fields_file: Path | None) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if fields_file is not None:
        fields.update(json.loads(fields_file.read_text(encoding="utf-8")))
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--field")
        fields[key.strip()] = value
    return fields


def _letter_payload(letter: GeneratedLetter) -> dict[str, Any]:
    return {
        "id": letter.id,
        "letter_number": letter.letter_number,
        "letter_type": letter.letter_type,
        "employee_id": letter.employee_id,
        "status": letter.status,
        "file_path": letter.file_path,
        "email_message_id": letter.email_message_id,
        "retry_count": letter.retry_count,
        "error_message": letter.error_message,
    }


def _bulk_payload(snapshot: BulkSnapshot) -> dict[str, Any]:
    operation = snapshot.operation
    return {
        "id": operation.id,
        "operation_type": operation.operation_type,
        "status": operation.status,
        "total_items": operation.total_items,
        "completed_items": operation.completed_items,
        "failed_items": operation.failed_items,
        "items": [
            {
                "id": item.id,
                "item_key": item.item_key,
                "state": item.state,
                "employee_name": item.employee_name,
                "letter_number": item.letter_number,
                "preview_path": item.preview_path,
                "error_kind": item.error_kind,
                "error_message": item.error_message,
            }
            for item in snapshot.items
        ],
    }


@app.command("init")
def init_cmd(seed: bool = typer.Option(False, "--seed", help="Insert demo templates, employees and a signature.")) -> None:
    """Initialize database, directories, and optional demo records."""
    configure_logging()
    result = init_database(seed=seed)
    typer.echo(json.dumps({"ok": True, **result}, indent=2))


@letter_app.command("generate")
def letter_generate(
    template_id: int = typer.Option(..., "--template-id"),
    employee_id: int = typer.Option(..., "--employee-id"),
    signature_id: int | None = typer.Option(None, "--signature-id"),
    use_latest_signature: bool = typer.Option(True, "--use-latest-signature/--no-latest-signature"),
    field: list[str] = typer.Option([], "--field", help="KEY=VALUE, repeatable"),
    fields_file: Path | None = typer.Option(None, "--fields-file", exists=True, readable=True),
    actor: str = typer.Option("", "--actor"),
) -> None:
    configure_logging()
    ensure_initialized()
    request = GenerateLetterRequest(
        template_id=template_id,
        employee_id=employee_id,
        signature_id=signature_id,
        use_latest_signature=use_latest_signature,
        field_values=_parse_fields(field, fields_file),
        actor=actor,
    )
    with SessionLocal() as db:
        letter = _unwrap(LetterGenerator(db).generate(request))
        _echo(_letter_payload(letter))


@letter_app.command("send")
def letter_send(letter_id: int = typer.Option(..., "--letter-id"), actor: str = typer.Option("", "--actor")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        letter = _unwrap(LetterDelivery(db).send(letter_id, actor=actor))
        _echo(_letter_payload(letter))


@letter_app.command("resend")
def letter_resend(
    letter_id: int = typer.Option(..., "--letter-id"),
    regenerate: bool = typer.Option(False, "--regenerate"),
    actor: str = typer.Option("", "--actor"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        result = _unwrap(RetryManager(db).retry_letter(letter_id, regenerate=regenerate, actor=actor))
        _echo(result.model_dump())


@letter_app.command("status")
def letter_status(
    letter_id: int = typer.Option(..., "--letter-id"),
    new_status: str = typer.Option(..., "--to"),
    notes: str = typer.Option("", "--notes"),
    actor: str = typer.Option("", "--actor"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        letter = _unwrap(StatusTracker(db).transition(letter_id, new_status, actor=actor, notes=notes))
        _echo(_letter_payload(letter))


@letter_app.command("history")
def letter_history(letter_id: int = typer.Option(..., "--letter-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        rows = _unwrap(StatusTracker(db).history(letter_id))
        _echo(
            [
                {
                    "from_status": row.from_status,
                    "to_status": row.to_status,
                    "changed_at": row.changed_at.isoformat() if row.changed_at else None,
                    "actor": row.actor,
                    "notes": row.notes,
                }
                for row in rows
            ]
        )


@letter_app.command("summary")
def letter_summary() -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        _echo(StatusTracker(db).summary())


def _run_bulk(request: BulkRequest, wait: bool) -> None:
    with SessionLocal() as db:
        coordinator = BulkOperationCoordinator(db)
        operation = _unwrap(coordinator.run_bulk(request))
        if not wait:
            _echo({"id": operation.id, "status": operation.status, "total_items": operation.total_items})
            return
        _echo(_bulk_payload(_unwrap(coordinator.wait(operation.id))))


@bulk_app.command("generate")
def bulk_generate(
    template_id: int = typer.Option(..., "--template-id"),
    employee_id: list[int] = typer.Option(..., "--employee-id", help="Repeatable"),
    signature_id: int | None = typer.Option(None, "--signature-id"),
    field: list[str] = typer.Option([], "--field", help="KEY=VALUE applied to every employee"),
    fields_file: Path | None = typer.Option(None, "--fields-file", exists=True, readable=True),
    wait: bool = typer.Option(True, "--wait/--no-wait"),
    initiated_by: str = typer.Option("", "--initiated-by"),
) -> None:
    configure_logging()
    ensure_initialized()
    _run_bulk(
        BulkRequest(
            operation_type="generate",
            template_id=template_id,
            item_ids=employee_id,
            common_field_values=_parse_fields(field, fields_file),
            signature=SignaturePolicy(signature_id=signature_id),
            initiated_by=initiated_by,
        ),
        wait,
    )


@bulk_app.command("preview")
def bulk_preview(
    template_id: int = typer.Option(..., "--template-id"),
    employee_id: list[int] = typer.Option(..., "--employee-id", help="Repeatable"),
    signature_id: int | None = typer.Option(None, "--signature-id"),
    field: list[str] = typer.Option([], "--field", help="KEY=VALUE applied to every employee"),
    fields_file: Path | None = typer.Option(None, "--fields-file", exists=True, readable=True),
    initiated_by: str = typer.Option("", "--initiated-by"),
) -> None:
    configure_logging()
    ensure_initialized()
    _run_bulk(
        BulkRequest(
            operation_type="preview",
            template_id=template_id,
            item_ids=employee_id,
            common_field_values=_parse_fields(field, fields_file),
            signature=SignaturePolicy(signature_id=signature_id),
            initiated_by=initiated_by,
        ),
        True,
    )


@bulk_app.command("send")
def bulk_send(
    letter_id: list[int] = typer.Option(..., "--letter-id", help="Repeatable"),
    wait: bool = typer.Option(True, "--wait/--no-wait"),
    initiated_by: str = typer.Option("", "--initiated-by"),
) -> None:
    configure_logging()
    ensure_initialized()
    _run_bulk(BulkRequest(operation_type="send-email", item_ids=letter_id, initiated_by=initiated_by), wait)


@bulk_app.command("status")
def bulk_status(operation_id: int = typer.Option(..., "--operation-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        _echo(_bulk_payload(_unwrap(BulkOperationCoordinator(db).get_status(operation_id))))


@bulk_app.command("cancel")
def bulk_cancel(operation_id: int = typer.Option(..., "--operation-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        cancelled = _unwrap(BulkOperationCoordinator(db).cancel(operation_id))
        _echo({"operation_id": operation_id, "cancelled": cancelled})


@bulk_app.command("retry")
def bulk_retry(
    operation_id: int = typer.Option(..., "--operation-id"),
    item_id: list[int] = typer.Option([], "--item-id", help="Limit the retry to these items"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        result = _unwrap(RetryManager(db).retry_operation(operation_id, item_id or None))
        _echo(result.model_dump())


@bulk_app.command("stats")
def bulk_stats() -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        _echo(BulkOperationCoordinator(db).stats())


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)
