"""Session-scoped storage of the last built tree.

A cached tree is reused until one of these happens:

* there is no cached tree for the session,
* the folder structure changed after the tree was built, or after the
  caller's own last refresh when that is earlier,
* the caller asks for a forced refresh.

There is no time-based expiry.  A session store that cannot be read or
written only costs a rebuild; it never fails the request.
"""

import json
import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import TypeAdapter, ValidationError

from foldertree import database
from foldertree.builder import OutputNode

logger = logging.getLogger(__name__)

FULL_TREE_KEY = "user_tree_structure"

_nodes_adapter = TypeAdapter(list[OutputNode])


def slice_key(node_id: int) -> str:
    """Cache key of the incremental slice below *node_id*."""
    return f"{FULL_TREE_KEY}:{node_id}"


# ── session store ────────────────────────────────────────────────────────────


class SessionStore:
    """JSON values keyed by name, scoped to one session token."""

    def __init__(self, token: str) -> None:
        self.token = token

    def get(self, key: str):
        conn = database.get_db()
        try:
            row = conn.execute(
                "SELECT value FROM session_store WHERE token = ? AND key = ?",
                (self.token, key),
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row["value"]) if row is not None else None

    def put(self, key: str, value) -> None:
        conn = database.get_db()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO session_store (token, key, value, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (self.token, key, json.dumps(value), time.time()),
            )
            conn.commit()
        finally:
            conn.close()


# ── result cache ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CacheEntry:
    nodes: list[OutputNode]
    built_at: float


class TreeCache:
    def __init__(self, store: SessionStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def lookup(
        self,
        key: str,
        last_folder_change: float | None,
        last_refresh: float | None = None,
        force: bool = False,
    ) -> CacheEntry | None:
        """Return the cached entry if it may be reused, else None."""
        if force:
            logger.debug("Cache bypassed for %s: forced refresh", key)
            return None

        try:
            raw = self._store.get(key)
        except (sqlite3.Error, json.JSONDecodeError) as exc:
            logger.warning("Session store unavailable, rebuilding %s: %s", key, exc)
            return None
        if not isinstance(raw, dict) or not raw.get("nodes"):
            return None

        try:
            entry = CacheEntry(
                nodes=_nodes_adapter.validate_python(raw["nodes"]),
                built_at=float(raw["timestamp"]),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            logger.warning("Discarding unreadable cached tree %s: %s", key, exc)
            return None

        reference = (
            entry.built_at
            if last_refresh is None
            else min(last_refresh, entry.built_at)
        )
        if last_folder_change is not None and last_folder_change > reference:
            logger.debug("Cache stale for %s: structure changed", key)
            return None
        return entry

    def save(self, key: str, nodes: list[OutputNode]) -> CacheEntry:
        entry = CacheEntry(nodes=nodes, built_at=self._clock())
        payload = {
            "nodes": _nodes_adapter.dump_python(nodes, mode="json"),
            "timestamp": entry.built_at,
        }
        try:
            self._store.put(key, payload)
        except sqlite3.Error as exc:
            logger.warning("Could not cache tree %s: %s", key, exc)
        return entry

    def get_or_build(
        self,
        key: str,
        build: Callable[[], list[OutputNode]],
        last_folder_change: float | None,
        last_refresh: float | None = None,
        force: bool = False,
    ) -> tuple[CacheEntry, bool]:
        """Return ``(entry, hit)``; *build* runs only on a miss."""
        entry = self.lookup(key, last_folder_change, last_refresh, force)
        if entry is not None:
            return entry, True
        return self.save(key, build()), False
