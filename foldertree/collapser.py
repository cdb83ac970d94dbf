"""Reparenting of folders that sit below hidden ancestors.

The builder walks the tree depth-first, pre-order, and reports every node
to the collapser before emitting it.  When a node is hidden, its visible
descendants must hang from the nearest emitted ancestor instead.

Each hidden node pushes ``(level, visible parent)``.  A later node at a
deeper level inherits the visible parent of the innermost entry; reaching
a level at or above an entry's level means the walk has left that hidden
subtree, so the entry is dropped.  Nested hidden ancestors therefore
compose: the innermost still-active one wins, and leaving it restores the
one around it.
"""

ROOT_MARKER = "#"

ParentRef = int | str


class TreeCollapser:
    def __init__(self) -> None:
        self._hidden: list[tuple[int, ParentRef]] = []

    @property
    def last_visible_parent(self) -> ParentRef | None:
        return self._hidden[-1][1] if self._hidden else None

    @property
    def last_visible_parent_level(self) -> int | None:
        return self._hidden[-1][0] if self._hidden else None

    def resolve_parent(self, parent_id: int, level: int) -> ParentRef:
        """Return the parent reference to emit for a node at *level*.

        Must be called once per visited node, in traversal order.
        """
        while self._hidden and level <= self._hidden[-1][0]:
            self._hidden.pop()
        if self._hidden:
            return self._hidden[-1][1]
        return ROOT_MARKER if not parent_id else parent_id

    def hide(self, resolved_parent: ParentRef, level: int) -> None:
        """Mark the node just resolved at *level* as hidden."""
        self._hidden.append((level, resolved_parent))
