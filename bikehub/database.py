# bikehub/database.py
from __future__ import annotations
from typing import Iterator

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session


def normalize_url(url: str, sslmode: str = "") -> str:
    url = url.strip()
    if not url:
        raise RuntimeError("DATABASE_URL is required")

    # Neon / Heroku style: postgresql://...
    # SQLAlchemy + psycopg wants postgresql+psycopg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)

    if sslmode and url.startswith("postgresql") and "sslmode=" not in url:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}sslmode={sslmode}"
    return url


def make_engine(url: str, sslmode: str = "") -> Engine:
    url = normalize_url(url, sslmode)
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,   # auto-reconnect
        pool_size=5,
        max_overflow=10,
    )


def init_db(engine: Engine) -> None:
    # Creates tables that don't exist; does not drop/alter
    from . import models  # noqa: F401  (register tables)
    SQLModel.metadata.create_all(engine)


def get_session(request: Request) -> Iterator[Session]:
    with Session(request.app.state.engine) as session:
        yield session
