import pytest
from sqlalchemy import text

from config import load_settings
from database import create_db_engine


def test_defaults_use_sqlite_under_data_dir(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("LEDGER_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("LEDGER_DATABASE_URL", raising=False)
    monkeypatch.delenv("LEDGER_TIMEZONE", raising=False)
    monkeypatch.delenv("LEDGER_LOG_LEVEL", raising=False)
    monkeypatch.delenv("LEDGER_AUDIT_INTERVAL_MINUTES", raising=False)

    settings = load_settings()

    assert settings.database_url == f"sqlite:///{tmp_path.resolve() / 'ledger.db'}"
    assert settings.timezone == "America/Sao_Paulo"
    assert settings.log_level == "INFO"
    assert settings.audit_interval_minutes == 60


def test_overrides_are_normalized(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_DATABASE_URL", "sqlite://")
    monkeypatch.setenv("LEDGER_TIMEZONE", "UTC")
    monkeypatch.setenv("LEDGER_LOG_LEVEL", " debug ")
    monkeypatch.setenv("LEDGER_AUDIT_INTERVAL_MINUTES", "5")

    settings = load_settings()

    assert settings.database_url == "sqlite://"
    assert settings.log_level == "DEBUG"
    assert settings.audit_interval_minutes == 5


@pytest.mark.parametrize(
    "name, value",
    [
        ("LEDGER_TIMEZONE", "Mars/Olympus_Mons"),
        ("LEDGER_LOG_LEVEL", "LOUD"),
        ("LEDGER_AUDIT_INTERVAL_MINUTES", "0"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv("LEDGER_DATABASE_URL", "sqlite://")
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError):
        load_settings()


def test_sqlite_engine_enforces_foreign_keys() -> None:
    engine = create_db_engine("sqlite+pysqlite:///:memory:")

    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA foreign_keys")).scalar_one() == 1
        assert conn.execute(text("PRAGMA journal_mode")).scalar_one() == "memory"


def test_file_database_uses_wal(tmp_path) -> None:
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")

    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA journal_mode")).scalar_one() == "wal"
    engine.dispose()
