"""Node classifier: decides how one folder appears in a user's tree.

Rules are evaluated in a fixed order and the first match wins:

0. Another user's personal folder (personal-folder feature on, folder
   flagged personal, id not among the user's personal folders) → EXCLUDED.
1. Forbidden and not granted through visible groups, limited folders or
   restricted-for-items folders → EXCLUDED.
2. In visible groups → READ_ONLY if the folder is read-only, or if the user
   is a read-only account and the folder is not one of their personal
   visible groups; VISIBLE otherwise.
3. Key of limited folders → LIMITED_ACCESS (badge = allowed item count).
4. Key of restricted-for-items folders → RESTRICTED_ITEMS (badge likewise).
5. "Only accessible folders" mode, folder listed in no-access folders
   → BLOCKED_VISIBLE.
6. "Only accessible folders" mode, no descendant is accessible
   → HIDDEN_COLLAPSED.
7. Anything else → BLOCKED_VISIBLE (shown greyed out, not clickable).

The classifier is pure: descendant ids are supplied by the caller, and
only fetched when rule 6 needs them.
"""

import html
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from foldertree.nested_tree import TreeNode
from foldertree.permissions import PermissionContext


class Category(str, Enum):
    VISIBLE = "visible"
    READ_ONLY = "read_only"
    LIMITED_ACCESS = "limited_access"
    RESTRICTED_ITEMS = "restricted_items"
    HIDDEN_COLLAPSED = "hidden_collapsed"
    BLOCKED_VISIBLE = "blocked_visible"
    EXCLUDED = "excluded"


# categories that let a folder through even below an excluded ancestor
OVERRIDE_CATEGORIES: frozenset[Category] = frozenset({
    Category.VISIBLE,
    Category.READ_ONLY,
    Category.LIMITED_ACCESS,
    Category.RESTRICTED_ITEMS,
})

# categories that are never emitted
HIDDEN_CATEGORIES: frozenset[Category] = frozenset({
    Category.HIDDEN_COLLAPSED,
    Category.EXCLUDED,
})


@dataclass(frozen=True)
class Classification:
    category: Category
    # allowed-item count for LIMITED_ACCESS / RESTRICTED_ITEMS
    badge_count: int | None = None
    # READ_ONLY because of the account, not the folder (eye badge variant)
    read_only_account: bool = False

    @property
    def is_hidden(self) -> bool:
        return self.category in HIDDEN_CATEGORIES

    @property
    def is_blocked(self) -> bool:
        return self.category is Category.BLOCKED_VISIBLE

    @property
    def restricted(self) -> bool:
        """Whether item listing for this folder goes through an allow-list."""
        if self.category is Category.VISIBLE:
            return False
        if self.category is Category.READ_ONLY:
            return not self.read_only_account
        return True

    @property
    def folder_class(self) -> str:
        if self.category in (
            Category.VISIBLE,
            Category.LIMITED_ACCESS,
            Category.RESTRICTED_ITEMS,
        ):
            return "folder"
        if self.category is Category.READ_ONLY and self.read_only_account:
            return "folder"
        return "folder_not_droppable"


def classify(
    node: TreeNode,
    ctx: PermissionContext,
    descendants: Callable[[], Iterable[int]] | None = None,
) -> Classification:
    """Return the single Classification for *node* under *ctx*."""
    nid = node.id

    if (
        ctx.personal_folders_enabled
        and node.personal_folder
        and nid not in ctx.personal_folders
    ):
        return Classification(Category.EXCLUDED)

    if nid in ctx.forbidden_folders and not ctx.is_override(nid):
        return Classification(Category.EXCLUDED)

    if nid in ctx.visible_groups:
        if nid in ctx.read_only_folders:
            return Classification(Category.READ_ONLY)
        if ctx.is_read_only_user and nid not in ctx.personal_visible_groups:
            return Classification(Category.READ_ONLY, read_only_account=True)
        return Classification(Category.VISIBLE)

    if nid in ctx.limited_folders:
        return Classification(
            Category.LIMITED_ACCESS, badge_count=len(ctx.limited_folders[nid])
        )

    if nid in ctx.restricted_folders_for_items:
        return Classification(
            Category.RESTRICTED_ITEMS,
            badge_count=len(ctx.restricted_folders_for_items[nid]),
        )

    if ctx.show_only_accessible_folders:
        if nid in ctx.no_access_folders:
            return Classification(Category.BLOCKED_VISIBLE)
        accessible = ctx.accessible_ids
        found = descendants is not None and any(
            d in accessible for d in descendants()
        )
        if not found:
            return Classification(Category.HIDDEN_COLLAPSED)

    return Classification(Category.BLOCKED_VISIBLE)


# ── display helpers ──────────────────────────────────────────────────────────


def is_personal_folder(node: TreeNode, ctx: PermissionContext) -> bool:
    """A top-level folder named after the current user's id."""
    if ctx.user_id in (None, ""):
        return False
    return node.nlevel == 1 and str(node.title) == str(ctx.user_id)


def display_title(node: TreeNode, ctx: PermissionContext) -> str:
    """Title shown to the user; personal folders show the login instead."""
    if is_personal_folder(node, ctx):
        return ctx.user_login
    return html.unescape(node.title or "")
