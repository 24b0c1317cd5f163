from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class LetterWorkflowError(Exception):
    kind = "LetterWorkflowError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.context}


class NotFound(LetterWorkflowError):
    kind = "NotFound"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class ValidationError(LetterWorkflowError):
    kind = "ValidationError"


class MissingRequiredField(ValidationError):
    kind = "MissingRequiredField"

    def __init__(self, field_name: str):
        super().__init__(f"required field '{field_name}' has no value", field=field_name)
        self.field_name = field_name


class UnknownField(ValidationError):
    kind = "UnknownField"

    def __init__(self, field_names: list[str]):
        names = ", ".join(sorted(field_names))
        super().__init__(f"template does not declare field(s): {names}", fields=sorted(field_names))


class InvalidFieldValue(ValidationError):
    kind = "InvalidFieldValue"

    def __init__(self, field_name: str, data_type: str, value: Any):
        super().__init__(
            f"value {value!r} is not a valid {data_type} for field '{field_name}'",
            field=field_name,
            data_type=data_type,
        )


class InvalidTransition(ValidationError):
    kind = "InvalidTransition"

    def __init__(self, letter_id: int, from_status: str, to_status: str, reason: str = ""):
        message = f"letter {letter_id} cannot move from {from_status} to {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, letter_id=letter_id, from_status=from_status, to_status=to_status)


class NoSignatureAvailable(ValidationError):
    kind = "NoSignatureAvailable"

    def __init__(self) -> None:
        super().__init__("no active digital signature is available")


class RenderFailure(LetterWorkflowError):
    kind = "RenderFailure"


class DispatchFailure(LetterWorkflowError):
    kind = "DispatchFailure"


class Conflict(LetterWorkflowError):
    kind = "Conflict"


class RetryLimitExceeded(LetterWorkflowError):
    kind = "RetryLimitExceeded"

    def __init__(self, letter_id: int, retry_count: int, ceiling: int):
        super().__init__(
            f"letter {letter_id} reached the retry ceiling ({retry_count}/{ceiling})",
            letter_id=letter_id,
            retry_count=retry_count,
            ceiling=ceiling,
        )


@dataclass(slots=True, frozen=True)
class Result(Generic[T]):
    """Outcome of a core operation: either a value or a typed workflow error."""

    value: T | None = None
    error: LetterWorkflowError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: LetterWorkflowError) -> Result[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
