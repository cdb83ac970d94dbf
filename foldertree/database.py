"""SQLite database initialisation and connection helpers."""

import sqlite3

from foldertree import config

DB_FILENAME = "foldertree.db"


def init_db() -> None:
    """Create the SQLite database and tables if they don't exist."""
    db_path = config.get().data_dir / DB_FILENAME
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS nested_tree (
                id INTEGER PRIMARY KEY,
                parent_id INTEGER NOT NULL DEFAULT 0,
                title TEXT,
                nleft INTEGER NOT NULL DEFAULT 0,
                nright INTEGER NOT NULL DEFAULT 0,
                nlevel INTEGER NOT NULL DEFAULT 0,
                personal_folder INTEGER NOT NULL DEFAULT 0,
                fa_icon TEXT NOT NULL DEFAULT 'fas fa-folder',
                fa_icon_selected TEXT NOT NULL DEFAULT 'fas fa-folder-open'
            );

            CREATE INDEX IF NOT EXISTS nested_tree_parent ON nested_tree (parent_id);
            CREATE INDEX IF NOT EXISTS nested_tree_bounds ON nested_tree (nleft, nright);

            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY,
                label TEXT NOT NULL DEFAULT '',
                id_tree INTEGER NOT NULL,
                inactif INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS items_tree ON items (id_tree, inactif);

            CREATE TABLE IF NOT EXISTS misc (
                type TEXT NOT NULL,
                intitule TEXT NOT NULL,
                valeur TEXT,
                PRIMARY KEY (type, intitule)
            );

            CREATE TABLE IF NOT EXISTS session_store (
                token TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL,
                PRIMARY KEY (token, key)
            );
            """
        )
        conn.commit()
        print(f"  ℹ  Database initialised: {db_path}")
    finally:
        conn.close()


def get_db() -> sqlite3.Connection:
    """Return a connection to the app database with Row factory enabled."""
    db_path = config.get().data_dir / DB_FILENAME
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn
