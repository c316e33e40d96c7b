"""
Managed-Attribute Reconciler.

Keeps the three managed roles (missing name, missing class, missing review
thread) on each member in line with the flags derived for them. The full
add/remove delta is computed before any platform call, then applied as at most
one batched add and one batched remove. A failed batch is logged; the next
reconciliation pass retries it.

Role updates made here fire member-update events of their own. Event handlers
drop those with is_managed_role_only_change() before asking for another pass.
"""

from dataclasses import dataclass, field
from typing import AbstractSet, FrozenSet, Iterable

import discord

from .classification import ManagedFlags, ManagedRoles
from .core.logger import ComponentLogger

_logger = ComponentLogger("reconciler")

@dataclass(frozen=True)
class RoleDelta:
    added: FrozenSet[int] = field(default_factory=frozenset)
    removed: FrozenSet[int] = field(default_factory=frozenset)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)

def role_ids_of(member: discord.Member) -> FrozenSet[int]:
    return frozenset(role.id for role in member.roles)

def desired_managed_roles(flags: ManagedFlags, managed: ManagedRoles) -> FrozenSet[int]:
    desired = set()
    if flags.missing_name:
        desired.add(managed.missing_name)
    if flags.missing_class:
        desired.add(managed.missing_class)
    if flags.missing_conversation:
        desired.add(managed.missing_conversation)
    return frozenset(desired)

def compute_managed_delta(
    current_role_ids: AbstractSet[int], flags: ManagedFlags, managed: ManagedRoles
) -> RoleDelta:
    """Return the minimal change bringing managed roles in line with ``flags``."""
    desired = desired_managed_roles(flags, managed)
    held = frozenset(current_role_ids) & managed.all_ids
    return RoleDelta(added=desired - held, removed=held - desired)

def is_managed_role_only_change(
    before_role_ids: Iterable[int], after_role_ids: Iterable[int], managed: ManagedRoles
) -> bool:
    """
    Tell whether a role update only touched managed roles.

    Such updates are the echo of our own corrections and must not trigger a
    reconciliation pass. Updates without any role difference return False.
    """
    changed = frozenset(before_role_ids) ^ frozenset(after_role_ids)
    return bool(changed) and changed <= managed.all_ids

class ManagedRoleReconciler:
    """Apply managed role deltas to Discord members."""

    def __init__(self, managed: ManagedRoles) -> None:
        self.managed = managed

    async def reconcile(self, member: discord.Member, flags: ManagedFlags) -> RoleDelta:
        """
        Bring the member's managed roles in line with ``flags``.

        Returns:
            The computed delta, whether or not every batch succeeded
        """
        delta = compute_managed_delta(role_ids_of(member), flags, self.managed)
        if not delta:
            return delta

        if delta.added:
            await self._apply(member, delta.added, add=True)
        if delta.removed:
            await self._apply(member, delta.removed, add=False)

        _logger.debug("managed_roles_reconciled",
            member_id=str(member.id),
            added=sorted(delta.added),
            removed=sorted(delta.removed),
        )
        return delta

    async def strip_all(self, member: discord.Member) -> bool:
        """
        Remove every managed role the member still holds.

        Returns:
            False if the removal was attempted and failed, True otherwise
        """
        held = role_ids_of(member) & self.managed.all_ids
        if not held:
            return True
        return await self._apply(member, held, add=False)

    async def _apply(self, member: discord.Member, role_ids: AbstractSet[int], add: bool) -> bool:
        roles = [discord.Object(id=role_id) for role_id in sorted(role_ids)]
        try:
            if add:
                await member.add_roles(*roles, reason="Roster managed role sync")
            else:
                await member.remove_roles(*roles, reason="Roster managed role sync")
            return True
        except discord.HTTPException as e:
            _logger.error("managed_role_batch_failed",
                member_id=str(member.id),
                operation="add" if add else "remove",
                role_ids=sorted(role_ids),
                error_type=type(e).__name__,
                error_msg=str(e),
            )
            return False
