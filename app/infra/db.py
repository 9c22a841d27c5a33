from __future__ import annotations

import os
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://reports:reports@db:5432/damage_reports",
)


def build_engine(url: str) -> Engine:
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
    return create_engine(url, **kwargs)


engine = build_engine(DATABASE_URL)


def get_engine() -> Engine:
    return engine


def open_session() -> Session:
    return Session(get_engine(), expire_on_commit=False)


def create_tables() -> None:
    from app.domain import models  # noqa: F401

    SQLModel.metadata.create_all(get_engine())


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
