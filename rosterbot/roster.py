"""
Roster Projection - the single owned table of current member state.

Every write runs the full reconciliation pass for one member: fetch the stored
record, read the conversation state, derive classification and managed flags,
correct the managed roles, then replace the member's view as a whole. Members
without an affiliation (no record, or a record with no guild) are purged and
stripped of their managed roles.

Nothing outside this module mutates the table; readers go through get() and
all(), which hand out immutable MemberView snapshots.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import discord

from .classification import RoleCatalog, classify
from .conversations import ConversationIndex
from .core.logger import ComponentLogger
from .reconciler import ManagedRoleReconciler, role_ids_of
from .records import RawRecord, RecordStore, StoreUnavailable

_logger = ComponentLogger("roster")

SYNC_CONCURRENCY = 10

@dataclass(frozen=True)
class MemberView:
    member_id: str
    display_name: str
    username: str
    registered_name: Optional[str]
    affiliation: Optional[str]
    class_category: Optional[str]
    weapon_role_id: Optional[int]
    weapon_primary: Optional[str]
    weapon_secondary: Optional[str]
    has_open_conversation: bool
    last_updated: datetime

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class RosterProjection:
    """In-memory projection of every member with a known affiliation."""

    def __init__(
        self,
        store: RecordStore,
        conversations: ConversationIndex,
        reconciler: ManagedRoleReconciler,
        catalog: RoleCatalog,
        on_change: Optional[Callable[[], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._views: Dict[str, MemberView] = {}
        self._store = store
        self._conversations = conversations
        self._reconciler = reconciler
        self._catalog = catalog
        self._on_change = on_change
        self._clock = clock

    def __len__(self) -> int:
        return len(self._views)

    def __contains__(self, member_id: Any) -> bool:
        return str(member_id) in self._views

    def get(self, member_id: Any) -> Optional[MemberView]:
        return self._views.get(str(member_id))

    def all(self) -> List[MemberView]:
        return list(self._views.values())

    # #################################################################################### #
    #                            Single Member Pass
    # #################################################################################### #
    async def upsert(self, member: discord.Member) -> Optional[MemberView]:
        """
        Run a reconciliation pass for one member.

        Returns:
            The new MemberView, or None if the member was purged or the pass
            was aborted because the record store is unavailable
        """
        try:
            record = await self._store.fetch_one(member.id)
        except StoreUnavailable as e:
            _logger.warning("upsert_aborted_store_unavailable",
                member_id=str(member.id),
                error=str(e),
            )
            return None
        return await self._apply(member, record)

    async def remove(self, member_id: Any) -> None:
        """Drop a member from the projection unconditionally."""
        if self._views.pop(str(member_id), None) is not None:
            _logger.info("member_removed", member_id=str(member_id))
            self._notify()

    async def _apply(
        self, member: discord.Member, record: Optional[RawRecord]
    ) -> Optional[MemberView]:
        member_id = str(member.id)

        if record is None or record.affiliation is None:
            await self._purge(member, reason="no_record" if record is None else "no_affiliation")
            return None

        has_open_conversation = self._conversations.has(member_id)
        classification, flags = classify(
            role_ids_of(member), record, has_open_conversation, self._catalog
        )

        await self._reconciler.reconcile(member, flags)

        view = MemberView(
            member_id=member_id,
            display_name=member.display_name,
            username=member.name,
            registered_name=record.registered_name,
            affiliation=record.affiliation,
            class_category=classification.class_category,
            weapon_role_id=classification.weapon_role_id,
            weapon_primary=classification.weapon_primary,
            weapon_secondary=classification.weapon_secondary,
            has_open_conversation=has_open_conversation,
            last_updated=self._clock(),
        )
        self._views[member_id] = view
        self._notify()
        return view

    async def _purge(self, member: discord.Member, reason: str) -> None:
        member_id = str(member.id)
        existed = self._views.pop(member_id, None) is not None
        stripped = await self._reconciler.strip_all(member)
        if existed:
            _logger.info("member_purged", member_id=member_id, reason=reason)
            self._notify()
        if not stripped:
            _logger.warning("managed_role_cleanup_incomplete", member_id=member_id)

    # #################################################################################### #
    #                            Full Re-sync
    # #################################################################################### #
    async def sync_all(self, members: Iterable[discord.Member]) -> bool:
        """
        Reconcile every human member against one batch of stored records.

        Members whose record lookup failed are skipped for this pass. Views of
        members no longer in the guild are purged.

        Returns:
            False if the record store was unreachable and the pass aborted
        """
        humans = {str(m.id): m for m in members if not m.bot}
        records = await self._store.fetch_many(humans.keys())
        if records is None:
            _logger.error("full_sync_aborted_store_unavailable", member_count=len(humans))
            return False

        semaphore = asyncio.Semaphore(SYNC_CONCURRENCY)

        async def reconcile_one(member_id: str) -> None:
            async with semaphore:
                await self._apply(humans[member_id], records[member_id])

        resolved = [member_id for member_id in humans if member_id in records]
        results = await asyncio.gather(
            *(reconcile_one(member_id) for member_id in resolved), return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, Exception)]
        for error in errors:
            _logger.error("member_sync_failed", error_type=type(error).__name__, error=str(error))

        departed = [member_id for member_id in self._views if member_id not in humans]
        for member_id in departed:
            await self.remove(member_id)

        _logger.info("full_sync_completed",
            members=len(humans),
            reconciled=len(resolved) - len(errors),
            skipped=len(humans) - len(resolved),
            departed=len(departed),
            tracked=len(self._views),
        )
        return True

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
