"""Active-item counts per folder, read from the ``items`` table."""

import sqlite3


class ItemCounter:
    """Counts items that are not flagged ``inactif``.

    Store errors propagate as ``sqlite3.Error``; callers decide whether a
    missing count is fatal.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def count_active_items(self, node_id: int) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM items WHERE inactif = 0 AND id_tree = ?",
            (node_id,),
        ).fetchone()
        return int(row[0])
