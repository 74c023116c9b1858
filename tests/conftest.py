from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from fiscal_core.config import LedgerSettings
from fiscal_core import models  # noqa: F401  (registra las tablas en Base)
from fiscal_core.database import Base


@pytest_asyncio.fixture
async def engine(tmp_path):
    # Base de datos en fichero: cada sesión usa su propia conexión, como en producción
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings()
