from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import get_settings
from referral_routing.models import Base

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

# "-- dialect: sqlite, postgresql" scopes the statements below it, up to the next directive.
_DIALECT_DIRECTIVE = re.compile(
    r"^--[ \t]*dialect:[ \t]*(?P<dialects>[a-z, ]+)$", re.MULTILINE | re.IGNORECASE
)

_ENGINE_LOCK = asyncio.Lock()
_ENGINE: AsyncEngine | None = None
_SESSION_FACTORY: sessionmaker[AsyncSession] | None = None


def _split_sql(chunk: str) -> list[str]:
    lines = [line for line in chunk.splitlines() if not line.strip().startswith("--")]
    return [statement.strip() for statement in "\n".join(lines).split(";") if statement.strip()]


def _parse_statements(raw_sql: str, dialect_name: str) -> list[str]:
    """Statements of a migration that apply to ``dialect_name``, in file order."""

    # re.split with one group yields the leading text, then (dialects, body) pairs.
    sections = _DIALECT_DIRECTIVE.split(raw_sql)
    statements = _split_sql(sections[0])
    for dialects, body in zip(sections[1::2], sections[2::2]):
        if dialect_name in {name.strip().lower() for name in dialects.split(",")}:
            statements.extend(_split_sql(body))
    return statements


async def apply_migrations(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    filename VARCHAR(255) NOT NULL PRIMARY KEY,
                    applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )
        result = await conn.execute(text("SELECT filename FROM schema_migrations"))
        applied = set(result.scalars().all())

        for migration in sorted(MIGRATIONS_DIR.glob("*.sql")):
            if migration.name in applied:
                continue
            for statement in _parse_statements(migration.read_text(), conn.dialect.name):
                await conn.execute(text(statement))
            await conn.execute(
                text("INSERT INTO schema_migrations (filename) VALUES (:filename)"),
                {"filename": migration.name},
            )


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await apply_migrations(engine)


async def get_engine() -> AsyncEngine:
    global _ENGINE, _SESSION_FACTORY

    if _ENGINE is None:
        async with _ENGINE_LOCK:
            if _ENGINE is None:
                engine = create_async_engine(get_settings().resolved_database_url, echo=False)
                await init_db(engine)
                _ENGINE = engine
                _SESSION_FACTORY = sessionmaker(
                    bind=engine, class_=AsyncSession, expire_on_commit=False
                )
    return _ENGINE


async def get_session_factory() -> sessionmaker[AsyncSession]:
    await get_engine()
    if _SESSION_FACTORY is None:
        raise RuntimeError("Session factory was not initialised")
    return _SESSION_FACTORY


async def dispose_engine() -> None:
    global _ENGINE, _SESSION_FACTORY
    if _ENGINE is not None:
        await _ENGINE.dispose()
        _ENGINE = None
        _SESSION_FACTORY = None


async def get_session() -> AsyncIterator[AsyncSession]:
    session_factory = await get_session_factory()
    async with session_factory() as session:
        yield session
