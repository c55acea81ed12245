"""Shared fixtures: temporary SQLite handles with maintenance loops disabled."""

import pytest
import pytest_asyncio

from heliactyl_db import KeyValueDatabase, Settings


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "heliactyl.db"


@pytest.fixture
def settings(db_path):
    return Settings(database_url=f"sqlite://{db_path}", stats_interval=0)


@pytest_asyncio.fixture
async def db(settings):
    database = KeyValueDatabase(settings=settings)
    await database.startup()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def ttl_db(settings):
    database = KeyValueDatabase(settings=settings, ttl_support=True)
    await database.startup()
    yield database
    await database.close()
