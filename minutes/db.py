from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine


def create_db_engine(database_url: str) -> Engine:
    kwargs: Dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(database_url, **kwargs)


def fetch_db_info(engine: Engine) -> Dict[str, object]:
    with engine.connect() as conn:
        jobs = conn.execute(text("SELECT COUNT(*) FROM meeting_jobs")).scalar()
    return {"dialect": engine.dialect.name, "jobs": int(jobs or 0)}
