"""
Classification & Flag Deriver.

Pure derivation of a member's class category, weapon and managed flags from
their role ids, their stored record and their review-thread state. Role tables
come from the RoleCatalog, loaded once from the JSON role catalog file. Lookups
scan tables in declared order so ties resolve the same way on every run; the
only side effect is a warning log when a member matches more than one entry.
"""

import json
from dataclasses import dataclass
from typing import AbstractSet, Any, FrozenSet, Iterable, Optional, Tuple

from .core.logger import ComponentLogger
from .records import RawRecord

_logger = ComponentLogger("classification")

@dataclass(frozen=True)
class ClassCategory:
    name: str
    role_ids: FrozenSet[int]

@dataclass(frozen=True)
class WeaponRole:
    role_id: int
    name: str

@dataclass(frozen=True)
class ManagedRoles:
    """Role ids the bot keeps in sync with the member's missing-X flags."""

    missing_name: int
    missing_class: int
    missing_conversation: int

    @property
    def all_ids(self) -> FrozenSet[int]:
        return frozenset({self.missing_name, self.missing_class, self.missing_conversation})

@dataclass(frozen=True)
class RoleCatalog:
    guild_id: int
    class_categories: Tuple[ClassCategory, ...]
    weapon_roles: Tuple[WeaponRole, ...]
    managed_roles: ManagedRoles
    review_channel_ids: FrozenSet[int]
    officer_role_ids: FrozenSet[int]
    name_channel_id: Optional[int] = None

@dataclass(frozen=True)
class Classification:
    class_category: Optional[str]
    weapon_role_id: Optional[int]
    weapon_primary: Optional[str]
    weapon_secondary: Optional[str]

@dataclass(frozen=True)
class ManagedFlags:
    missing_name: bool
    missing_class: bool
    missing_conversation: bool

def load_role_catalog(path: str) -> RoleCatalog:
    """
    Load the role catalog JSON file.

    Raises:
        ValueError: If the file is malformed or misses a required table
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return role_catalog_from_dict(data)

def role_catalog_from_dict(data: dict) -> RoleCatalog:
    try:
        managed = data["managed_roles"]
        return RoleCatalog(
            guild_id=int(data["guild_id"]),
            class_categories=tuple(
                ClassCategory(entry["name"], frozenset(int(r) for r in entry["role_ids"]))
                for entry in data["class_categories"]
            ),
            weapon_roles=tuple(
                WeaponRole(int(entry["role_id"]), entry["name"])
                for entry in data["weapon_roles"]
            ),
            managed_roles=ManagedRoles(
                missing_name=int(managed["missing_name"]),
                missing_class=int(managed["missing_class"]),
                missing_conversation=int(managed["missing_conversation"]),
            ),
            review_channel_ids=frozenset(int(c) for c in data.get("review_channel_ids", ())),
            officer_role_ids=frozenset(int(r) for r in data.get("officer_role_ids", ())),
            name_channel_id=int(data["name_channel_id"]) if data.get("name_channel_id") else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid role catalog: {type(e).__name__}: {e}") from e

def determine_class_category(
    role_ids: AbstractSet[int],
    categories: Iterable[ClassCategory],
    member_id: Any = None,
) -> Optional[str]:
    """Return the first declared category the member holds a role of."""
    found = [category.name for category in categories if category.role_ids & role_ids]
    if len(found) > 1:
        _logger.warning("multiple_class_categories",
            member_id=str(member_id),
            categories=found,
        )
    return found[0] if found else None

def determine_weapon_role(
    role_ids: AbstractSet[int],
    weapon_roles: Iterable[WeaponRole],
    member_id: Any = None,
) -> Optional[WeaponRole]:
    """Return the first declared weapon role the member holds."""
    found = [weapon for weapon in weapon_roles if weapon.role_id in role_ids]
    if len(found) > 1:
        _logger.warning("multiple_weapon_roles",
            member_id=str(member_id),
            weapon_role_ids=[weapon.role_id for weapon in found],
        )
    return found[0] if found else None

def classify(
    role_ids: AbstractSet[int],
    record: RawRecord,
    has_open_conversation: bool,
    catalog: RoleCatalog,
) -> Tuple[Classification, ManagedFlags]:
    """
    Derive classification and managed flags for one member.

    Without a weapon role, the primary weapon falls back to the stored
    primary slot. The secondary weapon always comes from the stored record.
    """
    class_category = determine_class_category(
        role_ids, catalog.class_categories, record.member_id
    )
    weapon = determine_weapon_role(role_ids, catalog.weapon_roles, record.member_id)

    classification = Classification(
        class_category=class_category,
        weapon_role_id=weapon.role_id if weapon else None,
        weapon_primary=weapon.name if weapon else record.primary_weapon,
        weapon_secondary=record.secondary_weapon,
    )
    flags = ManagedFlags(
        missing_name=record.registered_name is None,
        missing_class=class_category is None,
        missing_conversation=not has_open_conversation,
    )
    return classification, flags
