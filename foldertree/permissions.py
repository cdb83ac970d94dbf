"""Per-request permission context built from session data.

The session carries the user's access-control sets under the historical
key names below.  Anything that is not a proper collection is treated as
empty: a malformed session must never widen access, and never fail a build.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from foldertree.config import Settings

logger = logging.getLogger(__name__)

# session key -> context field
SESSION_KEYS: dict[str, str] = {
    "forbiden_pfs": "forbidden_folders",
    "groupes_visibles": "visible_groups",
    "list_folders_limited": "limited_folders",
    "list_restricted_folders_for_items": "restricted_folders_for_items",
    "no_access_folders": "no_access_folders",
    "read_only_folders": "read_only_folders",
    "personal_folders": "personal_folders",
    "personal_visible_groups": "personal_visible_groups",
}


def _to_id(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def id_set(value: object) -> frozenset[int]:
    """Normalise *value* into a frozenset of folder ids.

    Strings, mappings and scalars are not id collections and yield an empty
    set; unparseable members are dropped.
    """
    if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Iterable):
        return frozenset()
    ids = (_to_id(v) for v in value)
    return frozenset(i for i in ids if i is not None)


def id_mapping(value: object) -> Mapping[int, frozenset[int]]:
    """Normalise *value* into a read-only ``{folder id: item ids}`` mapping."""
    if not isinstance(value, Mapping):
        return MappingProxyType({})
    result: dict[int, frozenset[int]] = {}
    for key, items in value.items():
        folder_id = _to_id(key)
        if folder_id is None:
            continue
        result[folder_id] = id_set(items)
    return MappingProxyType(result)


@dataclass(frozen=True)
class PermissionContext:
    """Immutable bundle of the current user's access-control sets."""

    user_id: int | str
    user_login: str
    forbidden_folders: frozenset[int] = frozenset()
    visible_groups: frozenset[int] = frozenset()
    limited_folders: Mapping[int, frozenset[int]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    restricted_folders_for_items: Mapping[int, frozenset[int]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    no_access_folders: frozenset[int] = frozenset()
    read_only_folders: frozenset[int] = frozenset()
    personal_folders: frozenset[int] = frozenset()
    personal_visible_groups: frozenset[int] = frozenset()
    is_read_only_user: bool = False
    can_create_root_folder: bool = False
    show_only_accessible_folders: bool = False
    counters_enabled: bool = False
    personal_folders_enabled: bool = True

    @property
    def accessible_ids(self) -> frozenset[int]:
        """Folders a descendant must belong to for its ancestor to stay visible."""
        return self.visible_groups | frozenset(self.restricted_folders_for_items)

    def is_override(self, node_id: int) -> bool:
        """True when an explicit grant outranks the forbidden list."""
        return (
            node_id in self.visible_groups
            or node_id in self.limited_folders
            or node_id in self.restricted_folders_for_items
        )

    @classmethod
    def from_session(
        cls, session: Mapping, settings: Settings | None = None
    ) -> "PermissionContext":
        """Build a context from raw session values and the tree settings."""
        values: dict = {}
        for session_key, name in SESSION_KEYS.items():
            raw = session.get(session_key)
            if name in ("limited_folders", "restricted_folders_for_items"):
                values[name] = id_mapping(raw)
            else:
                values[name] = id_set(raw)
            if raw and not values[name]:
                logger.debug("Session value %s is malformed; treated as empty", session_key)

        if settings is not None:
            values["show_only_accessible_folders"] = settings.show_only_accessible_folders
            values["counters_enabled"] = settings.tree_counters
            values["personal_folders_enabled"] = settings.enable_pf_feature

        return cls(
            user_id=session.get("user_id", ""),
            user_login=str(session.get("login") or ""),
            is_read_only_user=_flag(session.get("user_read_only")),
            can_create_root_folder=_flag(session.get("can_create_root_folder")),
            **values,
        )


def _flag(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
