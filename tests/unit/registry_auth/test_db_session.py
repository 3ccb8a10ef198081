"""
Unit tests for registry_auth.db.session
"""

from registry_auth.config import Settings
from registry_auth.db.session import engine_options


def test_postgres_pool_is_sized_from_settings():
    settings = Settings(
        database_url_external="postgresql://u:p@db:5432/registry",
        db_pool_size=3,
        db_max_overflow=4,
        db_pool_timeout_seconds=5,
        db_pool_recycle_seconds=60,
    )

    options = engine_options(settings)

    assert options["pool_size"] == 3
    assert options["max_overflow"] == 4
    assert options["pool_timeout"] == 5
    assert options["pool_recycle"] == 60
    assert options["pool_pre_ping"] is True


def test_sqlite_gets_no_pool_sizing():
    settings = Settings(database_url_external="sqlite+aiosqlite:///:memory:", debug=True)

    assert engine_options(settings) == {"echo": True, "pool_pre_ping": True}
