"""Shared fixtures: a throw-away SQLite database with helpers to fill it."""

import sqlite3
from pathlib import Path

import pytest

from foldertree import database
from foldertree.config import Settings
from foldertree.nested_tree import rebuild


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Point config.get() at a fresh data dir and create the schema."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    settings = Settings(data_dir=data_dir)
    monkeypatch.setattr("foldertree.config.get", lambda: settings)
    database.init_db()
    return settings


@pytest.fixture()
def db(settings: Settings):
    conn = database.get_db()
    yield conn
    conn.close()


@pytest.fixture()
def make_tree(db: sqlite3.Connection):
    """Insert folders as ``(id, parent_id, title[, personal])`` and rebuild bounds."""

    def _make(rows: list[tuple]) -> sqlite3.Connection:
        for row in rows:
            node_id, parent_id, title = row[:3]
            personal = row[3] if len(row) > 3 else 0
            db.execute(
                "INSERT INTO nested_tree (id, parent_id, title, personal_folder) "
                "VALUES (?, ?, ?, ?)",
                (node_id, parent_id, title, personal),
            )
        db.commit()
        rebuild(db)
        return db

    return _make


@pytest.fixture()
def add_items(db: sqlite3.Connection):
    """Insert ``count`` items into folder ``node_id`` (``inactive`` flags them)."""

    def _add(node_id: int, count: int, inactive: bool = False) -> None:
        db.executemany(
            "INSERT INTO items (label, id_tree, inactif) VALUES (?, ?, ?)",
            [(f"item-{node_id}-{i}", node_id, int(inactive)) for i in range(count)],
        )
        db.commit()

    return _add
