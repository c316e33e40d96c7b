"""
Record Store Adapter - persisted per-member attributes.

The record store holds what the member (or an officer) declared outside of
Discord: guild affiliation, class, weapon picks, registered name and review
metadata. This module is the only place that knows its column names; everything
downstream works with RawRecord and ReviewData.

Lookup semantics:
- fetch_one() returns None when the member has no record and raises
  StoreUnavailable when the store cannot answer.
- fetch_many() chunks lookups by page size and, when a chunk fails, falls back
  to one point lookup per remaining member. It returns None only when the
  store is wholly unreachable, so callers can abort a sync pass instead of
  purging everyone.

SCHEMA:
CREATE TABLE member_records (
    discord_id VARCHAR(32) PRIMARY KEY,
    guild VARCHAR(64) NULL,
    class VARCHAR(64) NULL,
    primary_weapon VARCHAR(64) NULL,
    secondary_weapon VARCHAR(64) NULL,
    ingame_name VARCHAR(32) NULL,
    has_thread TINYINT(1) NOT NULL DEFAULT 0,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
);
CREATE TABLE member_reviews (
    discord_id VARCHAR(32) PRIMARY KEY,
    has_vod TINYINT(1) NOT NULL DEFAULT 0,
    vod_check_date VARCHAR(16) NOT NULL DEFAULT '',
    gear_checked TINYINT(1) NOT NULL DEFAULT 0,
    gear_check_date VARCHAR(16) NOT NULL DEFAULT '',
    gear_score INT NOT NULL DEFAULT 0,
    notes TEXT NULL
);
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from .core.logger import ComponentLogger
from .db import DBQueryError, is_shutting_down, run_db_query

_logger = ComponentLogger("record_store")

DEFAULT_PAGE_SIZE = 100
FALLBACK_CONCURRENCY = 10

_RECORD_COLUMNS = (
    "discord_id, guild, class, primary_weapon, secondary_weapon, "
    "ingame_name, has_thread, created_at, updated_at"
)

class StoreUnavailable(Exception):
    """The record store could not be queried; distinct from "no record"."""
    pass

class ReviewUpdateError(Exception):
    """A review update was rejected by the review rules."""
    pass

@dataclass(frozen=True)
class RawRecord:
    """Persisted attributes of one member, independent of store column names."""

    member_id: str
    affiliation: Optional[str] = None
    class_name: Optional[str] = None
    primary_weapon: Optional[str] = None
    secondary_weapon: Optional[str] = None
    registered_name: Optional[str] = None
    has_review_history: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def weapon_names(self) -> str:
        return combine_weapon_names(self.primary_weapon, self.secondary_weapon)

@dataclass(frozen=True)
class ReviewData:
    has_vod: bool = False
    vod_check_date: str = ""
    gear_checked: bool = False
    gear_check_date: str = ""
    gear_score: int = 0
    notes: str = ""

def combine_weapon_names(primary: Optional[str], secondary: Optional[str]) -> str:
    """Combine both weapon slots into one display string."""
    if not primary and not secondary:
        return ""
    if not secondary:
        return primary or ""
    if not primary:
        return secondary
    return f"{primary}/{secondary}"

def format_check_date(day: date) -> str:
    """Format a review check date as M/D/YY."""
    return f"{day.month}/{day.day}/{day.strftime('%y')}"

def _clean_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None

def record_from_row(row: Sequence[Any]) -> RawRecord:
    """Build a RawRecord from a ``member_records`` row in _RECORD_COLUMNS order."""
    return RawRecord(
        member_id=str(row[0]),
        affiliation=_clean_optional_str(row[1]),
        class_name=_clean_optional_str(row[2]),
        primary_weapon=_clean_optional_str(row[3]),
        secondary_weapon=_clean_optional_str(row[4]),
        registered_name=_clean_optional_str(row[5]),
        has_review_history=bool(row[6]),
        created_at=row[7],
        updated_at=row[8],
    )

class RecordStore:
    """Adapter over the ``member_records`` and ``member_reviews`` tables."""

    def __init__(
        self,
        query: Callable[..., Awaitable[Any]] = run_db_query,
        page_size: int = DEFAULT_PAGE_SIZE,
        shutting_down: Callable[[], bool] = is_shutting_down,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._query = query
        self.page_size = max(1, page_size)
        self._shutting_down = shutting_down
        self._today = today

    # #################################################################################### #
    #                            Member Records
    # #################################################################################### #
    async def fetch_one(self, member_id: Any) -> Optional[RawRecord]:
        """
        Fetch the record of a single member.

        Returns:
            The member's RawRecord, or None when no record exists

        Raises:
            StoreUnavailable: If the store cannot be queried
        """
        if self._shutting_down():
            raise StoreUnavailable("record store closed for shutdown")

        try:
            row = await self._query(
                f"SELECT {_RECORD_COLUMNS} FROM member_records WHERE discord_id = %s",
                (str(member_id),),
                fetch_one=True,
            )
        except DBQueryError as e:
            _logger.error("fetch_one_failed", member_id=str(member_id), error=str(e))
            raise StoreUnavailable(str(e)) from e

        return record_from_row(row) if row else None

    async def fetch_many(
        self, member_ids: Iterable[Any]
    ) -> Optional[Dict[str, Optional[RawRecord]]]:
        """
        Fetch records for many members in page-sized chunks.

        Members confirmed to have no record map to None. Members whose point
        lookup failed during fallback are left out of the result.

        Returns:
            Mapping of member id to record, or None if the store is unreachable
        """
        ids: List[str] = sorted({str(member_id) for member_id in member_ids})
        if self._shutting_down():
            _logger.info("fetch_many_skipped_shutdown", member_count=len(ids))
            return None

        results: Dict[str, Optional[RawRecord]] = {}
        for start in range(0, len(ids), self.page_size):
            if self._shutting_down():
                _logger.info("fetch_many_stopped_shutdown", fetched=len(results))
                return None

            chunk = ids[start:start + self.page_size]
            try:
                rows = await self._fetch_chunk(chunk)
            except DBQueryError as e:
                _logger.error("batch_query_failed_fallback",
                    error=str(e),
                    remaining=len(ids) - start,
                )
                return await self._fallback(ids[start:], results)

            found = {record.member_id: record for record in map(record_from_row, rows or ())}
            for member_id in chunk:
                results[member_id] = found.get(member_id)

        _logger.debug("fetch_many_completed",
            requested=len(ids),
            with_record=sum(1 for r in results.values() if r is not None),
        )
        return results

    async def _fetch_chunk(self, chunk: List[str]) -> Any:
        placeholders = ", ".join(["%s"] * len(chunk))
        return await self._query(
            f"SELECT {_RECORD_COLUMNS} FROM member_records "
            f"WHERE discord_id IN ({placeholders})",
            tuple(chunk),
            fetch_all=True,
        )

    async def _fallback(
        self, remaining: List[str], results: Dict[str, Optional[RawRecord]]
    ) -> Optional[Dict[str, Optional[RawRecord]]]:
        semaphore = asyncio.Semaphore(FALLBACK_CONCURRENCY)
        failures = 0

        async def lookup(member_id: str) -> None:
            nonlocal failures
            async with semaphore:
                try:
                    results[member_id] = await self.fetch_one(member_id)
                except StoreUnavailable:
                    failures += 1

        await asyncio.gather(*(lookup(member_id) for member_id in remaining))

        if self._shutting_down():
            return None
        if remaining and failures == len(remaining) and not results:
            _logger.error("record_store_unreachable", attempted=len(remaining))
            return None
        if failures:
            _logger.warning("fallback_partial_success",
                failed=failures,
                resolved=len(remaining) - failures,
            )
        return results

    async def set_registered_name(self, member_id: Any, name: str) -> None:
        """
        Store an already validated registered name, creating the record if needed.

        Raises:
            StoreUnavailable: If the write could not be performed
        """
        if self._shutting_down():
            raise StoreUnavailable("record store closed for shutdown")
        try:
            await self._query(
                "INSERT INTO member_records (discord_id, ingame_name) VALUES (%s, %s) "
                "ON DUPLICATE KEY UPDATE ingame_name = VALUES(ingame_name)",
                (str(member_id), name),
                commit=True,
            )
        except DBQueryError as e:
            _logger.error("set_registered_name_failed", member_id=str(member_id), error=str(e))
            raise StoreUnavailable(str(e)) from e
        _logger.info("registered_name_saved", member_id=str(member_id))

    # #################################################################################### #
    #                            Review Metadata
    # #################################################################################### #
    async def get_review_data(self, member_id: Any) -> ReviewData:
        """Return review metadata, or defaults when none exists or on read error."""
        try:
            return await self._read_review(member_id)
        except StoreUnavailable:
            return ReviewData()

    async def _read_review(self, member_id: Any) -> ReviewData:
        if self._shutting_down():
            raise StoreUnavailable("record store closed for shutdown")
        try:
            row = await self._query(
                "SELECT has_vod, vod_check_date, gear_checked, gear_check_date, "
                "gear_score, notes FROM member_reviews WHERE discord_id = %s",
                (str(member_id),),
                fetch_one=True,
            )
        except DBQueryError as e:
            _logger.error("review_read_failed", member_id=str(member_id), error=str(e))
            raise StoreUnavailable(str(e)) from e

        if not row:
            return ReviewData()
        return ReviewData(
            has_vod=bool(row[0]),
            vod_check_date=row[1] or "",
            gear_checked=bool(row[2]),
            gear_check_date=row[3] or "",
            gear_score=int(row[4] or 0),
            notes=row[5] or "",
        )

    async def update_review_data(
        self,
        member_id: Any,
        has_vod: Optional[bool] = None,
        gear_checked: Optional[bool] = None,
        gear_score: Optional[int] = None,
        notes: Optional[str] = None,
        refresh_vod_date: bool = False,
        refresh_gear_date: bool = False,
    ) -> ReviewData:
        """
        Apply a review update and persist the resulting review metadata.

        Setting a check flag to true stamps today's date, setting it to false
        clears the date. A date refresh is only allowed while the flag is set.

        Raises:
            ReviewUpdateError: If a date refresh is requested on an unset flag
            StoreUnavailable: If the current review could not be read or the
                write could not be performed
        """
        current = await self._read_review(member_id)
        stamp = format_check_date(self._today())
        updated = current

        if has_vod is not None:
            updated = replace(updated, has_vod=has_vod, vod_check_date=stamp if has_vod else "")
        elif refresh_vod_date:
            if not current.has_vod:
                raise ReviewUpdateError(
                    "Cannot update VOD check date when VOD is not marked as available"
                )
            updated = replace(updated, vod_check_date=stamp)

        if gear_checked is not None:
            updated = replace(
                updated, gear_checked=gear_checked, gear_check_date=stamp if gear_checked else ""
            )
        elif refresh_gear_date:
            if not current.gear_checked:
                raise ReviewUpdateError(
                    "Cannot update gear check date when gear is not marked as checked"
                )
            updated = replace(updated, gear_check_date=stamp)

        if gear_score is not None:
            updated = replace(updated, gear_score=gear_score)
        if notes is not None:
            updated = replace(updated, notes=notes)

        if self._shutting_down():
            raise StoreUnavailable("record store closed for shutdown")
        try:
            await self._query(
                "INSERT INTO member_reviews (discord_id, has_vod, vod_check_date, "
                "gear_checked, gear_check_date, gear_score, notes) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s) "
                "ON DUPLICATE KEY UPDATE has_vod = VALUES(has_vod), "
                "vod_check_date = VALUES(vod_check_date), gear_checked = VALUES(gear_checked), "
                "gear_check_date = VALUES(gear_check_date), gear_score = VALUES(gear_score), "
                "notes = VALUES(notes)",
                (
                    str(member_id),
                    int(updated.has_vod),
                    updated.vod_check_date,
                    int(updated.gear_checked),
                    updated.gear_check_date,
                    updated.gear_score,
                    updated.notes,
                ),
                commit=True,
            )
        except DBQueryError as e:
            _logger.error("review_update_failed", member_id=str(member_id), error=str(e))
            raise StoreUnavailable(str(e)) from e

        _logger.info("review_updated", member_id=str(member_id))
        return updated
