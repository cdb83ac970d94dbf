"""Folder tree: FastAPI glue around the tree builder."""

import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import Cookie, Depends, FastAPI, HTTPException, Query

from foldertree import config, database
from foldertree.builder import TreeBuilder
from foldertree.cache import FULL_TREE_KEY, SessionStore, TreeCache, slice_key
from foldertree.items import ItemCounter
from foldertree.nested_tree import ROOT_ID, NestedTree, get_last_folder_change
from foldertree.permissions import PermissionContext

logger = logging.getLogger(__name__)

PERMISSIONS_KEY = "permissions"


# ── Lifespan (startup / shutdown) ────────────────────────────────────────────


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup ── load + validate config (sys.exit on error)
    config.load()
    database.init_db()
    yield


# ── App ──────────────────────────────────────────────────────────────────────

app = FastAPI(title="Folder tree", lifespan=lifespan)


# ── Session dependency ───────────────────────────────────────────────────────


def require_session(session: str | None = Cookie(default=None)) -> SessionStore:
    """Return the caller's session store. Raises 401 without permission data."""
    if not session:
        raise HTTPException(status_code=401, detail="Not authenticated")
    store = SessionStore(session)
    if not isinstance(store.get(PERMISSIONS_KEY), dict):
        raise HTTPException(status_code=401, detail="Not authenticated")
    return store


# ── Tree route ───────────────────────────────────────────────────────────────


def load_tree(
    store: SessionStore,
    node_id: int | None,
    force_refresh: bool,
    last_refresh: float | None,
) -> dict:
    """Serve the caller's tree from cache, building it on a miss."""
    settings = config.get()
    session_data = store.get(PERMISSIONS_KEY) or {}
    ctx = PermissionContext.from_session(session_data, settings)

    strategy = session_data.get("user_treeloadstrategy") or settings.tree_load_strategy
    sequential = strategy == "sequential"
    target = node_id if (sequential and node_id is not None) else ROOT_ID

    conn = database.get_db()
    try:
        builder = TreeBuilder(
            NestedTree(conn),
            ItemCounter(conn),
            max_nodes=settings.max_nodes,
            max_depth=settings.max_depth,
        )
        if sequential:
            key = slice_key(target)
            build = partial(builder.build_children, target, ctx)
        else:
            key = FULL_TREE_KEY
            build = partial(builder.build_full_tree, ctx)

        entry, hit = TreeCache(store).get_or_build(
            key,
            build,
            last_folder_change=get_last_folder_change(conn),
            last_refresh=last_refresh,
            force=force_refresh,
        )
    finally:
        conn.close()

    logger.debug("Tree %s served (%s, %d nodes)", key, "hit" if hit else "built", len(entry.nodes))
    return {
        "nodes": [n.model_dump(mode="json") for n in entry.nodes],
        "timestamp": entry.built_at,
    }


@app.get("/api/tree")
async def api_tree(
    node_id: int | None = Query(default=None, alias="id", ge=0),
    force_refresh: int = 0,
    user_tree_last_refresh_timestamp: float | None = None,
    store: SessionStore = Depends(require_session),
) -> dict:
    """Return the caller's folder tree (full, or one level when sequential)."""
    return load_tree(store, node_id, force_refresh == 1, user_tree_last_refresh_timestamp)
