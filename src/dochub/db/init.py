from __future__ import annotations

from pathlib import Path

from dochub.config import get_settings
from dochub.db.base import Base
from dochub.db.session import SessionLocal, engine
from dochub.db import models  # noqa: F401
from dochub.db.seed import seed_demo_data


def ensure_data_directories() -> None:
    settings = get_settings()
    paths: list[Path] = [
        settings.data_dir,
        settings.letters_dir,
        settings.previews_dir,
        settings.signatures_dir,
        settings.outbox_dir,
    ]
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def init_database(seed: bool = False) -> dict[str, int]:
    ensure_data_directories()
    Base.metadata.create_all(bind=engine)

    if not seed:
        return {"templates": 0, "employees": 0, "signatures": 0}
    with SessionLocal() as session:
        return seed_demo_data(session)
