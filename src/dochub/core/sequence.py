from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from dochub.db.models import LetterSequence
from dochub.db.session import SessionLocal

logger = logging.getLogger(__name__)

_ISSUE_LOCK = threading.Lock()


@dataclass(slots=True, frozen=True)
class IssuedNumber:
    letter_type: str
    sequence: int
    letter_number: str


def letter_prefix(letter_type: str) -> str:
    prefix = re.sub(r"[^A-Z0-9]", "", letter_type.upper())
    return prefix or "LETTER"


def format_letter_number(letter_type: str, sequence: int) -> str:
    return f"{letter_prefix(letter_type)}-{sequence:06d}"


class LetterNumberIssuer:
    """Issues per-letter-type sequence numbers from the ``letter_sequences`` table.

    Each number is committed in its own transaction before it is handed out,
    so a number is never reissued, even when the letter it was meant for
    fails later or is deleted.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self.session_factory = session_factory or SessionLocal

    def issue(self, letter_type: str) -> IssuedNumber:
        with _ISSUE_LOCK, self.session_factory() as session:
            value = self._increment(session, letter_type)
        issued = IssuedNumber(letter_type, value, format_letter_number(letter_type, value))
        logger.debug("Issued letter number %s", issued.letter_number)
        return issued

    def current(self, letter_type: str) -> int:
        with self.session_factory() as session:
            value = session.scalar(
                select(LetterSequence.last_value).where(LetterSequence.letter_type == letter_type)
            )
        return int(value or 0)

    def _increment(self, session: Session, letter_type: str) -> int:
        for _ in range(2):
            result = session.execute(
                update(LetterSequence)
                .where(LetterSequence.letter_type == letter_type)
                .values(last_value=LetterSequence.last_value + 1)
            )
            if result.rowcount:
                value = session.scalar(
                    select(LetterSequence.last_value).where(LetterSequence.letter_type == letter_type)
                )
                session.commit()
                return int(value)

            session.add(LetterSequence(letter_type=letter_type, last_value=1))
            try:
                session.commit()
                return 1
            except IntegrityError:
                # another process created the row first
                session.rollback()
        raise RuntimeError(f"could not issue a letter number for {letter_type!r}")
