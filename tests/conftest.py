import pytest

import config
import database


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    """Point config and the SQLite file at tmp_path so tests never touch the project directory."""
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")
    db_path = tmp_path / "test.db"
    monkeypatch.setattr(database, "get_db_path", lambda: db_path)
    return db_path
