"""Tests for foldertree.builder: full and incremental tree builds."""

import itertools
import logging
import sqlite3

import pytest

from foldertree.builder import OutputNode, TreeBuilder, TreeLimitError, verify_parent_refs
from foldertree.classifier import OVERRIDE_CATEGORIES, Category
from foldertree.collapser import ROOT_MARKER
from foldertree.items import ItemCounter
from foldertree.nested_tree import NestedTree
from foldertree.permissions import PermissionContext


def _ctx(**kwargs) -> PermissionContext:
    kwargs.setdefault("user_id", 7)
    kwargs.setdefault("user_login", "alice")
    return PermissionContext(**kwargs)


def _pairs(nodes: list[OutputNode]) -> list[tuple[int, int | str]]:
    return [(n.id, n.parent) for n in nodes]


# Wider shape used by the invariant and incremental tests:
#   1 A
#     2 B
#       3 C
#       4 D
#     5 E
#   6 F
#     7 G
#       8 H
_WIDE = [
    (1, 0, "A"), (2, 1, "B"), (3, 2, "C"), (4, 2, "D"),
    (5, 1, "E"), (6, 0, "F"), (7, 6, "G"), (8, 7, "H"),
]
_PARENTS = {node_id: parent for node_id, parent, _ in _WIDE}


@pytest.fixture()
def wide(make_tree) -> NestedTree:
    return NestedTree(make_tree(_WIDE))


# ════════════════════════════════════════════════════════════════════════════════
# Reference scenarios
# ════════════════════════════════════════════════════════════════════════════════


class TestScenarios:
    def test_hidden_chain_with_forbidden_leaf_is_empty(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "A"), (2, 1, "B")]))
        ctx = _ctx(show_only_accessible_folders=True, forbidden_folders=frozenset({2}))
        assert TreeBuilder(tree).build_full_tree(ctx) == []

    @pytest.mark.parametrize("only_accessible", [True, False])
    def test_visible_leaf_below_hidden_parent_moves_to_root(self, make_tree, only_accessible):
        tree = NestedTree(make_tree([(1, 0, "A"), (2, 1, "B")]))
        ctx = _ctx(
            show_only_accessible_folders=only_accessible,
            forbidden_folders=frozenset({1}),
            visible_groups=frozenset({2}),
        )
        result = TreeBuilder(tree).build_full_tree(ctx)
        assert _pairs(result) == [(2, ROOT_MARKER)]
        assert result[0].category is Category.VISIBLE

    def test_personal_folder_shows_login(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "7")]))
        ctx = _ctx(visible_groups=frozenset({1}))
        (node,) = TreeBuilder(tree).build_full_tree(ctx)
        assert node.title == "alice"
        assert node.is_personal is True

    def test_read_only_visible_folder_counts_active_items(self, make_tree, add_items, db):
        tree = NestedTree(make_tree([(1, 0, "Docs")]))
        add_items(1, 3)
        add_items(1, 2, inactive=True)
        ctx = _ctx(
            visible_groups=frozenset({1}),
            read_only_folders=frozenset({1}),
            limited_folders={1: frozenset({10, 11, 12, 13, 14})},
            counters_enabled=True,
        )
        (node,) = TreeBuilder(tree, ItemCounter(db)).build_full_tree(ctx)
        assert node.category is Category.READ_ONLY
        assert node.badge_count == 3
        assert node.is_read_only is True
        assert node.can_edit is False


# ════════════════════════════════════════════════════════════════════════════════
# Collapsing
# ════════════════════════════════════════════════════════════════════════════════


class TestCollapsing:
    def test_chained_hidden_ancestors_and_sibling(self, make_tree):
        # 1 Top > 2 Mid > 3 Leaf, and 1 Top > 4 Side; only 3 and 4 are limited
        tree = NestedTree(make_tree([
            (1, 0, "Top"), (2, 1, "Mid"), (3, 2, "Leaf"), (4, 1, "Side"),
        ]))
        ctx = _ctx(
            show_only_accessible_folders=True,
            limited_folders={3: frozenset({1}), 4: frozenset({1, 2})},
        )
        result = TreeBuilder(tree).build_full_tree(ctx)
        assert _pairs(result) == [(3, ROOT_MARKER), (4, ROOT_MARKER)]
        assert [n.badge_count for n in result] == [1, 2]

    def test_blocked_parent_keeps_visible_child(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "Top"), (2, 1, "Child")]))
        ctx = _ctx(show_only_accessible_folders=True, visible_groups=frozenset({2}))
        result = TreeBuilder(tree).build_full_tree(ctx)
        assert _pairs(result) == [(1, ROOT_MARKER), (2, 1)]
        top = result[0]
        assert top.is_blocked is True
        assert top.category is Category.BLOCKED_VISIBLE
        assert top.hint == "no_access"
        assert top.has_children is True

    def test_without_only_accessible_everything_is_shown(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "Top"), (2, 1, "Child")]))
        result = TreeBuilder(tree).build_full_tree(_ctx())
        assert _pairs(result) == [(1, ROOT_MARKER), (2, 1)]
        assert all(n.is_blocked for n in result)

    def test_visible_below_hidden_inside_shown_branch(self, wide):
        # 7 is excluded; 8 hangs from 6, which stays blocked because of 8
        ctx = _ctx(
            show_only_accessible_folders=True,
            forbidden_folders=frozenset({7}),
            visible_groups=frozenset({8}),
        )
        result = TreeBuilder(wide).build_full_tree(ctx)
        assert _pairs(result) == [(6, ROOT_MARKER), (8, 6)]


class TestExcludedSubtree:
    def test_only_overrides_survive_below_excluded(self, make_tree):
        tree = NestedTree(make_tree([
            (1, 0, "Top"), (2, 1, "Mid"), (3, 2, "Leaf"), (4, 1, "Other"),
        ]))
        ctx = _ctx(forbidden_folders=frozenset({1}), visible_groups=frozenset({3}))
        result = TreeBuilder(tree).build_full_tree(ctx)
        assert _pairs(result) == [(3, ROOT_MARKER)]

    def test_foreign_personal_folder_is_dropped(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "7", 1), (2, 0, "8", 1)]))
        ctx = _ctx(visible_groups=frozenset({1, 2}), personal_folders=frozenset({1}))
        result = TreeBuilder(tree).build_full_tree(ctx)
        assert [n.id for n in result] == [1]
        assert result[0].is_pf is True
        assert result[0].title == "alice"


# ════════════════════════════════════════════════════════════════════════════════
# Invariants
# ════════════════════════════════════════════════════════════════════════════════


def _ancestors(node_id: int) -> list[int]:
    out = []
    parent = _PARENTS[node_id]
    while parent:
        out.append(parent)
        parent = _PARENTS[parent]
    return out


_CONTEXTS = [
    _ctx(
        show_only_accessible_folders=only,
        forbidden_folders=frozenset(forbidden),
        visible_groups=frozenset(visible),
        limited_folders=limited,
    )
    for only, forbidden, visible, limited in itertools.product(
        [False, True],
        [set(), {1}, {2}, {1, 7}, {6}],
        [set(), {3}, {4, 8}, {1, 8}],
        [{}, {5: frozenset({1})}],
    )
]


class TestInvariants:
    @pytest.mark.parametrize("ctx", _CONTEXTS)
    def test_full_tree_properties(self, wide, ctx):
        result = TreeBuilder(wide).build_full_tree(ctx)
        seen: set = {ROOT_MARKER}
        for node in result:
            # pre-order: the parent is already emitted
            assert node.parent in seen
            seen.add(node.id)
            assert node.category not in (Category.EXCLUDED, Category.HIDDEN_COLLAPSED)
            blocked_above = any(
                a in ctx.forbidden_folders and not ctx.is_override(a)
                for a in _ancestors(node.id)
            )
            if blocked_above or node.id in ctx.forbidden_folders:
                assert node.category in OVERRIDE_CATEGORIES
        assert len(seen) == len(result) + 1
        emitted = {n.id for n in result}
        assert ctx.visible_groups <= emitted
        assert set(ctx.limited_folders) <= emitted

    @pytest.mark.parametrize("ctx", _CONTEXTS[::7])
    def test_slices_reference_expanded_node(self, wide, ctx):
        builder = TreeBuilder(wide)
        for node_id in (0, 1, 2, 6, 7):
            result = builder.build_children(node_id, ctx)
            expected = ROOT_MARKER if node_id == 0 else node_id
            assert all(n.parent == expected for n in result)

    def test_idempotent(self, wide):
        ctx = _ctx(show_only_accessible_folders=True, visible_groups=frozenset({3, 8}))
        builder = TreeBuilder(wide)
        assert builder.build_full_tree(ctx) == builder.build_full_tree(ctx)

    def test_verify_parent_refs_rejects_dangling(self):
        nodes = [
            OutputNode(id=1, parent=ROOT_MARKER, title="a", category=Category.VISIBLE),
            OutputNode(id=2, parent=9, title="b", category=Category.VISIBLE),
        ]
        with pytest.raises(AssertionError, match="Dangling"):
            verify_parent_refs(nodes)
        verify_parent_refs(nodes, external=(9,))


# ════════════════════════════════════════════════════════════════════════════════
# Incremental mode
# ════════════════════════════════════════════════════════════════════════════════


class TestBuildChildren:
    def test_top_level(self, wide):
        ctx = _ctx(show_only_accessible_folders=True, visible_groups=frozenset({3}))
        result = TreeBuilder(wide).build_children(0, ctx)
        assert _pairs(result) == [(1, ROOT_MARKER)]
        assert result[0].has_children is True

    def test_one_level_below(self, wide):
        ctx = _ctx(show_only_accessible_folders=True, visible_groups=frozenset({3}))
        result = TreeBuilder(wide).build_children(2, ctx)
        assert _pairs(result) == [(3, 2)]
        assert result[0].has_children is False

    def test_hidden_child_is_not_promoted(self, wide):
        ctx = _ctx(
            show_only_accessible_folders=True,
            forbidden_folders=frozenset({7}),
            visible_groups=frozenset({8}),
        )
        builder = TreeBuilder(wide)
        assert builder.build_children(6, ctx) == []
        assert (8, 6) in _pairs(builder.build_full_tree(ctx))

    def test_excluded_folder_has_no_children(self, wide):
        ctx = _ctx(forbidden_folders=frozenset({1}), visible_groups=frozenset({2}))
        assert TreeBuilder(wide).build_children(1, ctx) == []

    def test_folder_below_excluded_ancestor_stays_hidden(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "E"), (2, 1, "X"), (3, 2, "Z")]))
        ctx = _ctx(forbidden_folders=frozenset({1}))
        builder = TreeBuilder(tree)
        assert builder.build_full_tree(ctx) == []
        assert builder.build_children(2, ctx) == []

    def test_granted_folder_below_excluded_ancestor_is_listed(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "E"), (2, 1, "X"), (3, 2, "Z"), (4, 2, "W")]))
        ctx = _ctx(forbidden_folders=frozenset({1}), visible_groups=frozenset({3}))
        builder = TreeBuilder(tree)
        assert _pairs(builder.build_full_tree(ctx)) == [(3, ROOT_MARKER)]
        assert _pairs(builder.build_children(2, ctx)) == [(3, 2)]

    def test_unknown_folder(self, wide):
        assert TreeBuilder(wide).build_children(99, _ctx()) == []


# ════════════════════════════════════════════════════════════════════════════════
# Counters, failures and limits
# ════════════════════════════════════════════════════════════════════════════════


class _FailingCounter:
    def count_active_items(self, node_id: int) -> int:
        raise sqlite3.OperationalError("database is locked")


class _RecordingCounter:
    def __init__(self) -> None:
        self.calls: list[int] = []

    def count_active_items(self, node_id: int) -> int:
        self.calls.append(node_id)
        return 2


class _FlakyTree(NestedTree):
    """Pretends folder 2 was deleted between listing and loading."""

    def get_node(self, node_id):
        return None if node_id == 2 else super().get_node(node_id)


class TestCounters:
    def test_rolled_up_counts(self, wide, add_items, db):
        add_items(1, 1)
        add_items(3, 2)
        add_items(4, 5)  # not accessible, never counted
        ctx = _ctx(
            visible_groups=frozenset({1}),
            restricted_folders_for_items={3: frozenset({1})},
            counters_enabled=True,
        )
        result = {n.id: n for n in TreeBuilder(wide, ItemCounter(db)).build_full_tree(ctx)}
        assert result[1].badge_count == 1
        assert result[1].descendant_badge_count == 3
        assert result[1].descendant_folder_count == 4
        # allow-list badge, not the item table
        assert result[3].badge_count == 1
        assert result[3].descendant_badge_count is None

    def test_each_folder_counted_once(self, wide):
        counter = _RecordingCounter()
        ctx = _ctx(visible_groups=frozenset({1, 3}), counters_enabled=True)
        result = {n.id: n for n in TreeBuilder(wide, counter).build_full_tree(ctx)}
        assert sorted(counter.calls) == [1, 3, 3]
        assert result[1].badge_count == 2
        assert result[1].descendant_badge_count == 4
        assert result[3].descendant_badge_count == 2

    def test_disabled_counters_skip_item_store(self, wide):
        ctx = _ctx(visible_groups=frozenset({1}), limited_folders={5: frozenset({1, 2})})
        result = {n.id: n for n in TreeBuilder(wide, _FailingCounter()).build_full_tree(ctx)}
        assert result[1].badge_count is None
        assert result[1].descendant_folder_count is None
        assert result[5].badge_count == 2

    def test_store_failure_counts_zero(self, wide, caplog):
        ctx = _ctx(visible_groups=frozenset({1}), counters_enabled=True)
        with caplog.at_level(logging.WARNING, logger="foldertree.builder"):
            result = TreeBuilder(wide, _FailingCounter()).build_full_tree(ctx)
        top = next(n for n in result if n.id == 1)
        assert top.badge_count == 0
        assert top.descendant_badge_count == 0
        assert "Item count failed for folder 1" in caplog.text


class TestFailures:
    def test_vanished_folder_is_skipped_with_subtree(self, make_tree, caplog):
        tree = _FlakyTree(make_tree([(1, 0, "A"), (2, 1, "B"), (3, 2, "C")]))
        ctx = _ctx(visible_groups=frozenset({1, 2, 3}))
        with caplog.at_level(logging.WARNING, logger="foldertree.builder"):
            result = TreeBuilder(tree).build_full_tree(ctx)
        assert _pairs(result) == [(1, ROOT_MARKER)]
        assert "Folder 2 vanished" in caplog.text

    def test_node_limit(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "A"), (2, 0, "B"), (3, 0, "C")]))
        with pytest.raises(TreeLimitError) as exc_info:
            TreeBuilder(tree, max_nodes=2).build_full_tree(_ctx())
        assert exc_info.value.status_code == 413

    def test_depth_limit_truncates(self, make_tree, caplog):
        tree = NestedTree(make_tree([(1, 0, "A"), (2, 1, "B"), (3, 2, "C")]))
        ctx = _ctx(visible_groups=frozenset({1, 2, 3}))
        with caplog.at_level(logging.WARNING, logger="foldertree.builder"):
            result = TreeBuilder(tree, max_depth=2).build_full_tree(ctx)
        assert _pairs(result) == [(1, ROOT_MARKER), (2, 1)]
        assert "depth limit" in caplog.text


class TestOutputFields:
    def test_edit_rights_follow_root_folder_permission(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "A"), (2, 0, "B"), (3, 0, "C")]))
        ctx = _ctx(
            visible_groups=frozenset({1, 2}),
            read_only_folders=frozenset({2}),
            can_create_root_folder=True,
        )
        result = {n.id: n for n in TreeBuilder(tree).build_full_tree(ctx)}
        assert result[1].can_edit is True
        assert result[2].can_edit is False
        assert result[3].can_edit is False

    def test_read_only_account_hint(self, make_tree):
        tree = NestedTree(make_tree([(1, 0, "A"), (2, 0, "B")]))
        ctx = _ctx(
            visible_groups=frozenset({1}),
            limited_folders={2: frozenset({1})},
            is_read_only_user=True,
        )
        result = {n.id: n for n in TreeBuilder(tree).build_full_tree(ctx)}
        assert result[1].category is Category.READ_ONLY
        assert result[1].hint == "read_only_account"
        assert result[2].category is Category.LIMITED_ACCESS
        assert result[2].is_read_only is True
        assert result[2].hint == "read_only_account"

    def test_icons_come_from_store(self, make_tree, db):
        make_tree([(1, 0, "A")])
        db.execute("UPDATE nested_tree SET fa_icon = 'fas fa-key' WHERE id = 1")
        db.commit()
        (node,) = TreeBuilder(NestedTree(db)).build_full_tree(_ctx())
        assert node.icon == "fas fa-key"
        assert node.icon_selected == "fas fa-folder-open"
