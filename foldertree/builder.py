"""Tree builder: turns the shared folder hierarchy into one user's view.

Two entry points:

``build_full_tree(ctx)``
    Walks the whole hierarchy depth-first (explicit stack, pre-order),
    classifies every folder and applies the collapser, so hidden folders
    disappear and their visible descendants hang from the nearest emitted
    ancestor.  Descendants of an excluded folder are only emitted when a
    grant of their own lets them through.

``build_children(node_id, ctx)``
    Returns one level: the classified children of ``node_id`` (0 for the
    top level).  No collapsing happens here; a hidden child is simply left
    out, and its descendants are not promoted into the slice.  Below an
    excluded ancestor only children with a grant of their own are listed.

Both return a list of OutputNode whose ``parent`` is either ``"#"`` (root)
or the id of another emitted node (or, for a slice, the requested node).
"""

import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi import HTTPException
from pydantic import BaseModel, ConfigDict, Field

from foldertree.classifier import (
    OVERRIDE_CATEGORIES,
    Category,
    Classification,
    classify,
    display_title,
    is_personal_folder,
)
from foldertree.collapser import ROOT_MARKER, ParentRef, TreeCollapser
from foldertree.items import ItemCounter
from foldertree.nested_tree import ROOT_ID, NestedTree, TreeNode
from foldertree.permissions import PermissionContext

logger = logging.getLogger(__name__)


# ── output record ────────────────────────────────────────────────────────────


class OutputNode(BaseModel):
    """One folder as the tree widget should render it (semantic fields only)."""

    model_config = ConfigDict(frozen=True)

    id: int
    parent: int | str  # "#" for the root
    title: str
    category: Category
    is_personal: bool = False  # title replaced by the user's login
    is_pf: bool = False  # member of the user's personal folders
    is_read_only: bool = False
    is_blocked: bool = False
    badge_count: int | None = Field(default=None, ge=0)
    descendant_badge_count: int | None = Field(default=None, ge=0)
    descendant_folder_count: int | None = Field(default=None, ge=0)
    restricted: bool = True
    folder_class: str = "folder_not_droppable"
    can_edit: bool = False
    has_children: bool = False
    hint: str = ""  # read_only_account | no_access | ""
    icon: str = "fas fa-folder"
    icon_selected: str = "fas fa-folder-open"


class TreeLimitError(HTTPException):
    """413 – the hierarchy is larger than one build is allowed to visit."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            status_code=413,
            detail=f"Folder tree exceeds the limit of {limit} folders per build.",
        )


def verify_parent_refs(
    nodes: Iterable[OutputNode], external: Iterable[ParentRef] = ()
) -> None:
    """Raise AssertionError if a parent reference points at a missing node.

    ``external`` lists references that are valid without being emitted
    (the expanded folder of an incremental slice).
    """
    nodes = list(nodes)
    known: set[ParentRef] = {ROOT_MARKER, *external}
    known.update(n.id for n in nodes)
    dangling = [(n.id, n.parent) for n in nodes if n.parent not in known]
    if dangling:
        raise AssertionError(f"Dangling parent references: {dangling}")


# ── builder ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Frame:
    node_id: int
    parent_id: int
    depth: int
    below_excluded: bool


class TreeBuilder:
    """Builds OutputNode lists from a NestedTree and an optional ItemCounter."""

    def __init__(
        self,
        tree: NestedTree,
        counter: ItemCounter | None = None,
        max_nodes: int = 50_000,
        max_depth: int = 64,
    ) -> None:
        self._tree = tree
        self._counter = counter
        self.max_nodes = max_nodes
        self.max_depth = max_depth

    # ── full mode ────────────────────────────────────────────────────────

    def build_full_tree(self, ctx: PermissionContext) -> list[OutputNode]:
        collapser = TreeCollapser()
        result: list[OutputNode] = []
        visited = 0

        stack = [
            _Frame(child, ROOT_ID, 1, False)
            for child in reversed(self._tree.get_children(ROOT_ID))
        ]
        while stack:
            frame = stack.pop()
            visited += 1
            if visited > self.max_nodes:
                raise TreeLimitError(self.max_nodes)

            node = self._tree.get_node(frame.node_id)
            if node is None:
                logger.warning("Folder %d vanished during the build; skipped", frame.node_id)
                continue

            parent_ref = collapser.resolve_parent(frame.parent_id, frame.depth)
            descendants = self._lazy_descendants(node.id)
            cls = classify(node, ctx, descendants)
            children = self._tree.get_children(node.id)

            suppressed = cls.is_hidden or (
                frame.below_excluded and cls.category not in OVERRIDE_CATEGORIES
            )
            if suppressed:
                collapser.hide(parent_ref, frame.depth)
            else:
                result.append(
                    self._emit(node, cls, parent_ref, ctx, bool(children), descendants)
                )

            if frame.depth >= self.max_depth:
                if children:
                    logger.warning(
                        "Folder %d is at the depth limit (%d); %d children not shown",
                        node.id, self.max_depth, len(children),
                    )
                continue

            below = frame.below_excluded or cls.category is Category.EXCLUDED
            for child in reversed(children):
                stack.append(_Frame(child, node.id, frame.depth + 1, below))

        verify_parent_refs(result)
        logger.info("Built full tree: %d of %d folders shown", len(result), visited)
        return result

    # ── incremental mode ─────────────────────────────────────────────────

    def build_children(self, node_id: int, ctx: PermissionContext) -> list[OutputNode]:
        if node_id != ROOT_ID:
            parent = self._tree.get_node(node_id)
            if parent is None:
                logger.warning("Expansion requested for unknown folder %d", node_id)
                return []
            if classify(parent, ctx).category is Category.EXCLUDED:
                return []
        below_excluded = self._has_excluded_ancestor(node_id, ctx)

        parent_ref: ParentRef = ROOT_MARKER if node_id == ROOT_ID else node_id
        child_ids = self._tree.get_children(node_id)
        if len(child_ids) > self.max_nodes:
            raise TreeLimitError(self.max_nodes)

        result: list[OutputNode] = []
        for child_id in child_ids:
            node = self._tree.get_node(child_id)
            if node is None:
                logger.warning("Folder %d vanished during the build; skipped", child_id)
                continue
            descendants = self._lazy_descendants(node.id)
            cls = classify(node, ctx, descendants)
            if cls.is_hidden:
                continue
            if below_excluded and cls.category not in OVERRIDE_CATEGORIES:
                continue
            has_children = bool(self._tree.get_children(node.id))
            result.append(
                self._emit(node, cls, parent_ref, ctx, has_children, descendants)
            )

        verify_parent_refs(result, external=(parent_ref,))
        return result

    # ── helpers ──────────────────────────────────────────────────────────

    def _has_excluded_ancestor(self, node_id: int, ctx: PermissionContext) -> bool:
        """True when a folder above *node_id* is excluded for *ctx*."""
        seen = {node_id}
        node = self._tree.get_node(node_id)
        parent_id = node.parent_id if node is not None else ROOT_ID
        while parent_id != ROOT_ID and parent_id not in seen:
            seen.add(parent_id)
            ancestor = self._tree.get_node(parent_id)
            if ancestor is None:
                break
            if classify(ancestor, ctx).category is Category.EXCLUDED:
                return True
            parent_id = ancestor.parent_id
        return False

    def _lazy_descendants(self, node_id: int) -> Callable[[], list[int]]:
        memo: list[list[int]] = []

        def load() -> list[int]:
            if not memo:
                memo.append(self._tree.get_descendants(node_id, ids_only=True))
            return memo[0]

        return load

    def _count_items(self, node_id: int) -> int:
        """Active items in *node_id*; a store failure counts as zero."""
        if self._counter is None:
            return 0
        try:
            return max(self._counter.count_active_items(node_id), 0)
        except sqlite3.Error as exc:
            logger.warning("Item count failed for folder %d: %s", node_id, exc)
            return 0

    def _emit(
        self,
        node: TreeNode,
        cls: Classification,
        parent_ref: ParentRef,
        ctx: PermissionContext,
        has_children: bool,
        descendants: Callable[[], list[int]],
    ) -> OutputNode:
        category = cls.category
        badge = cls.badge_count
        rolled_up = None
        folder_count = None

        if ctx.counters_enabled and self._counter is not None:
            if category in (Category.VISIBLE, Category.READ_ONLY):
                badge = self._count_items(node.id)
                accessible = ctx.accessible_ids
                rolled_up = badge + sum(
                    self._count_items(d) for d in descendants() if d in accessible
                )
            folder_count = self._tree.num_descendants(node.id)

        if category is Category.READ_ONLY:
            hint = "read_only_account"
        elif category is Category.BLOCKED_VISIBLE:
            hint = "no_access"
        elif ctx.is_read_only_user and node.id not in ctx.personal_folders:
            hint = "read_only_account"
        else:
            hint = ""

        return OutputNode(
            id=node.id,
            parent=parent_ref,
            title=display_title(node, ctx),
            category=category,
            is_personal=is_personal_folder(node, ctx),
            is_pf=node.id in ctx.personal_folders,
            is_read_only=category is Category.READ_ONLY
            or (ctx.is_read_only_user and category in OVERRIDE_CATEGORIES),
            is_blocked=cls.is_blocked,
            badge_count=badge,
            descendant_badge_count=rolled_up,
            descendant_folder_count=folder_count,
            restricted=cls.restricted,
            folder_class=cls.folder_class,
            can_edit=ctx.can_create_root_folder
            and category
            in (Category.VISIBLE, Category.LIMITED_ACCESS, Category.RESTRICTED_ITEMS),
            has_children=has_children,
            hint=hint,
            icon=node.fa_icon,
            icon_selected=node.fa_icon_selected,
        )
