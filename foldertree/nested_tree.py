"""Read-only nested-set queries over the ``nested_tree`` table.

Every folder row carries ``nleft`` / ``nright`` bounds and a ``nlevel`` depth
(top-level folders sit at level 1, their parent id is 0).  Descendants of a
node are the rows strictly inside its bounds, so subtree queries never need
recursion in SQL.

``rebuild()`` recomputes the bounds from the parent pointers; it is the only
writer here and exists for imports and tests.  The folder-structure change
timestamp lives in the ``misc`` table and drives cache invalidation.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ROOT_ID = 0

_COLUMNS = (
    "id, parent_id, title, nleft, nright, nlevel, "
    "personal_folder, fa_icon, fa_icon_selected"
)


@dataclass(frozen=True)
class TreeNode:
    id: int
    parent_id: int
    title: str
    nlevel: int
    nleft: int = 0
    nright: int = 0
    personal_folder: bool = False
    fa_icon: str = "fas fa-folder"
    fa_icon_selected: str = "fas fa-folder-open"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TreeNode":
        return cls(
            id=int(row["id"]),
            parent_id=int(row["parent_id"] or 0),
            title=row["title"] if row["title"] is not None else "",
            nlevel=int(row["nlevel"]),
            nleft=int(row["nleft"]),
            nright=int(row["nright"]),
            personal_folder=bool(row["personal_folder"]),
            fa_icon=row["fa_icon"],
            fa_icon_selected=row["fa_icon_selected"],
        )


class NestedTree:
    """Nested-set adapter bound to an open connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_node(self, node_id: int) -> TreeNode | None:
        """Return the node, or None when *node_id* is unknown."""
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM nested_tree WHERE id = ?", (node_id,)
        ).fetchone()
        return TreeNode.from_row(row) if row is not None else None

    def get_children(self, node_id: int) -> list[int]:
        """Ids of the direct children of *node_id* in display order."""
        rows = self._conn.execute(
            "SELECT id FROM nested_tree WHERE parent_id = ? ORDER BY nleft, id",
            (node_id,),
        ).fetchall()
        return [int(row["id"]) for row in rows]

    def get_descendants(
        self,
        node_id: int,
        include_self: bool = False,
        ids_only: bool = False,
        direct_only: bool = False,
    ) -> list:
        """Return the descendants of *node_id* in pre-order.

        ``node_id`` 0 stands for the virtual root (the whole forest).  An
        unknown id has no descendants.  With ``ids_only`` the result is a
        list of ints, otherwise a list of TreeNode.
        """
        if direct_only:
            query = f"SELECT {_COLUMNS} FROM nested_tree WHERE parent_id = ? ORDER BY nleft, id"
            rows = self._conn.execute(query, (node_id,)).fetchall()
        elif node_id == ROOT_ID:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM nested_tree ORDER BY nleft, id"
            ).fetchall()
        else:
            node = self.get_node(node_id)
            if node is None:
                return []
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM nested_tree "
                "WHERE nleft > ? AND nright < ? ORDER BY nleft, id",
                (node.nleft, node.nright),
            ).fetchall()

        nodes = [TreeNode.from_row(row) for row in rows]
        if include_self and node_id != ROOT_ID:
            own = self.get_node(node_id)
            if own is not None:
                nodes.insert(0, own)
        if ids_only:
            return [n.id for n in nodes]
        return nodes

    def num_descendants(self, node_id: int) -> int:
        """Number of folders below *node_id* (0 for unknown ids)."""
        if node_id == ROOT_ID:
            row = self._conn.execute("SELECT COUNT(*) FROM nested_tree").fetchone()
            return int(row[0])
        node = self.get_node(node_id)
        if node is None:
            return 0
        return max((node.nright - node.nleft - 1) // 2, 0)


# ── maintenance ──────────────────────────────────────────────────────────────


def rebuild(conn: sqlite3.Connection) -> int:
    """Recompute nleft / nright / nlevel from ``parent_id`` pointers.

    Siblings are ordered by title, then id.  Rows whose parent does not
    exist are treated as top-level.  Returns the number of rows updated.
    """
    rows = conn.execute("SELECT id, parent_id, title FROM nested_tree").fetchall()
    known = {int(r["id"]) for r in rows}
    children: dict[int, list[tuple[str, int]]] = {}
    for r in rows:
        parent = int(r["parent_id"] or 0)
        if parent not in known:
            parent = ROOT_ID
        children.setdefault(parent, []).append((r["title"] or "", int(r["id"])))
    for siblings in children.values():
        siblings.sort()

    bounds: dict[int, list[int]] = {}
    counter = 0
    # (node id, level, expanded?)
    stack: list[tuple[int, int, bool]] = [
        (nid, 1, False) for _, nid in reversed(children.get(ROOT_ID, []))
    ]
    while stack:
        nid, level, expanded = stack.pop()
        counter += 1
        if expanded:
            bounds[nid][1] = counter
            continue
        bounds[nid] = [counter, 0, level]
        stack.append((nid, level, True))
        for _, child in reversed(children.get(nid, [])):
            stack.append((child, level + 1, False))

    if len(bounds) < len(rows):
        logger.warning(
            "%d folders are unreachable from the root (parent cycle)",
            len(rows) - len(bounds),
        )

    conn.executemany(
        "UPDATE nested_tree SET nleft = ?, nright = ?, nlevel = ? WHERE id = ?",
        [(left, right, level, nid) for nid, (left, right, level) in bounds.items()],
    )
    conn.commit()
    return len(bounds)


# ── structure-change timestamp ───────────────────────────────────────────────


def get_last_folder_change(conn: sqlite3.Connection) -> float | None:
    """Return the epoch of the last structural change, or None if unknown."""
    row = conn.execute(
        "SELECT valeur FROM misc WHERE type = ? AND intitule = ?",
        ("timestamp", "last_folder_change"),
    ).fetchone()
    if row is None or row["valeur"] in (None, ""):
        return None
    try:
        return float(row["valeur"])
    except ValueError:
        logger.warning("Unreadable last_folder_change value: %r", row["valeur"])
        return None


def touch_folder_change(conn: sqlite3.Connection, when: float | None = None) -> float:
    """Record a structural change at *when* (default: now) and return it."""
    stamp = time.time() if when is None else when
    conn.execute(
        "INSERT OR REPLACE INTO misc (type, intitule, valeur) VALUES (?, ?, ?)",
        ("timestamp", "last_folder_change", repr(stamp)),
    )
    conn.commit()
    return stamp
