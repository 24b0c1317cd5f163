from __future__ import annotations

from collections.abc import Generator

from sqlalchemy.orm import Session

from dochub.config import get_settings
from dochub.db.session import get_db_session
from dochub.mailer.dispatcher import EmailDispatcher, build_dispatcher
from dochub.rendering.renderer import DocumentRenderer, JinjaDocumentRenderer


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


def get_renderer() -> DocumentRenderer:
    return JinjaDocumentRenderer()


def get_dispatcher() -> EmailDispatcher:
    return build_dispatcher(get_settings())
