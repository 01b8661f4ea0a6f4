import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine

from quotagate.app.db.init_db import init_database, verify_connection


@pytest.mark.asyncio
async def test_init_database_creates_bucket_table(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'init.db'}")
    try:
        await init_database(drop_first=True, engine=engine)

        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

        assert "rate_limit_buckets" in tables
        assert await verify_connection(engine)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_verify_connection_reports_failure(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    try:
        assert await verify_connection(engine) is False
    finally:
        await engine.dispose()
