import asyncio

from database import STORE_ERRORS, engine_options


def test_asyncpg_bounds_connect_and_statement_time():
    options = engine_options("postgresql+asyncpg://serona:pw@localhost:5432/serona", 10)

    assert options == {
        "pool_timeout": 10.0,
        "connect_args": {"timeout": 10.0, "command_timeout": 10.0},
    }


def test_aiosqlite_uses_busy_timeout():
    assert engine_options("sqlite+aiosqlite:///./serona.db", 2.5) == {"connect_args": {"timeout": 2.5}}


def test_statement_timeouts_count_as_store_errors():
    assert isinstance(asyncio.TimeoutError(), STORE_ERRORS)
