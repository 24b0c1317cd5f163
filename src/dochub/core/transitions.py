from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from dochub.types import LETTER_STATUSES, LetterStatus

Trigger = Literal["dispatch", "delivery_event", "retry", "manual"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"Delivered"})

# from-status -> allowed to-statuses
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "Generated": frozenset({"Sent", "Failed"}),
    "Sent": frozenset({"Delivered", "Failed"}),
    "Failed": frozenset({"Sent"}),
    "Delivered": frozenset(),
}

TIMESTAMP_FIELDS: dict[str, str] = {
    "Sent": "sent_at",
    "Delivered": "delivered_at",
}


@dataclass(slots=True, frozen=True)
class TransitionCheck:
    allowed: bool
    reason: str = ""


@dataclass(slots=True)
class TransitionPolicy:
    """Guards for the letter lifecycle graph."""

    max_retries: int

    def check(
        self,
        *,
        from_status: str,
        to_status: str,
        file_path: str = "",
        retry_count: int = 0,
    ) -> TransitionCheck:
        if to_status not in LETTER_STATUSES:
            return TransitionCheck(False, f"unknown status '{to_status}'")
        if from_status not in ALLOWED_TRANSITIONS:
            return TransitionCheck(False, f"unknown status '{from_status}'")
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            if from_status in TERMINAL_STATUSES:
                return TransitionCheck(False, f"{from_status} is terminal")
            allowed = ", ".join(next_statuses(from_status))
            return TransitionCheck(
                False, f"transition is not part of the lifecycle; {from_status} can move to {allowed}"
            )

        if from_status == "Generated" and to_status == "Sent" and not file_path:
            return TransitionCheck(False, "letter has no rendered file")

        if from_status == "Failed" and to_status == "Sent" and retry_count >= self.max_retries:
            return TransitionCheck(False, f"retry count {retry_count} reached the ceiling {self.max_retries}")

        return TransitionCheck(True)

    def is_valid_walk(self, statuses: list[str]) -> bool:
        if not statuses or statuses[0] != "Generated":
            return False
        return all(
            current in ALLOWED_TRANSITIONS.get(previous, frozenset())
            for previous, current in zip(statuses, statuses[1:])
        )


def next_statuses(status: LetterStatus) -> list[str]:
    return sorted(ALLOWED_TRANSITIONS.get(status, frozenset()))
