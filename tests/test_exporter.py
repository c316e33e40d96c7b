"""
Export scheduler tests - debouncing, retries, ordering and the Sheets sink.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from rosterbot.core.reliability import RetryManager
from rosterbot.exporter import (
    EXPORT_COLUMNS,
    ExportScheduler,
    GoogleSheetsSink,
    build_rows,
)
from rosterbot.roster import MemberView

NOW = datetime(2024, 12, 20, 12, 0, tzinfo=timezone.utc)

def view(member_id, affiliation="Tsunami", registered_name="Aria", **kwargs):
    fields = dict(
        member_id=str(member_id),
        display_name=f"m{member_id}",
        username=f"user{member_id}",
        registered_name=registered_name,
        affiliation=affiliation,
        class_category="Tank",
        weapon_role_id=11,
        weapon_primary="SnS Tank",
        weapon_secondary=None,
        has_open_conversation=False,
        last_updated=NOW,
    )
    fields.update(kwargs)
    return MemberView(**fields)

def make_scheduler(sink, views=(), debounce=0.01, shutting_down=lambda: False):
    return ExportScheduler(
        snapshot=lambda: list(views),
        sink=sink,
        debounce_seconds=debounce,
        periodic_seconds=3600,
        max_attempts=3,
        retry_delay=3.0,
        shutting_down=shutting_down,
        retry_manager=RetryManager(sleep=AsyncMock()),
    )

class TestBuildRows:

    def test_sorted_by_affiliation_then_name_nulls_last(self):
        rows = build_rows([
            view(1, affiliation="Tsunami", registered_name="Zed"),
            view(2, affiliation=None, registered_name="Amy"),
            view(3, affiliation="Avalanche", registered_name=None),
            view(4, affiliation="Avalanche", registered_name="Bob"),
            view(5, affiliation="Tsunami", registered_name="Amy"),
        ])
        assert [row[0] for row in rows] == ["4", "3", "5", "1", "2"]

    def test_row_layout_matches_columns(self):
        row = build_rows([view(1, has_open_conversation=True)])[0]
        assert len(row) == len(EXPORT_COLUMNS)
        assert row == ["1", "user1", "Aria", "Tsunami", "Tank", "11", "SnS Tank", True, NOW.isoformat()]

    def test_missing_values_are_blank(self):
        row = build_rows([view(1, registered_name=None, class_category=None, weapon_role_id=None, weapon_primary=None)])[0]
        assert row[2] == row[4] == row[5] == row[6] == ""

class TestExportScheduler:

    @pytest.mark.asyncio
    async def test_burst_of_requests_yields_one_write(self):
        sink = Mock()
        sink.replace_all = AsyncMock()
        scheduler = make_scheduler(sink, views=[view(1)])

        for _ in range(5):
            scheduler.request_export()
        await asyncio.sleep(0.1)

        sink.replace_all.assert_awaited_once()
        header, rows = sink.replace_all.await_args.args
        assert header == EXPORT_COLUMNS
        assert len(rows) == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_two_failures_then_success_writes_once(self):
        sink = Mock()
        sink.replace_all = AsyncMock(side_effect=[RuntimeError("quota"), RuntimeError("quota"), None])
        scheduler = make_scheduler(sink, views=[view(1), view(2)])

        assert await scheduler.export_now() is True

        assert sink.replace_all.await_count == 3
        final_rows = sink.replace_all.await_args.args[1]
        assert [row[0] for row in final_rows] == ["1", "2"]
        assert scheduler.exports_succeeded == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sink = Mock()
        sink.replace_all = AsyncMock(side_effect=RuntimeError("down"))
        scheduler = make_scheduler(sink)

        assert await scheduler.export_now() is False
        assert sink.replace_all.await_count == 3
        assert scheduler.exports_failed == 1

    @pytest.mark.asyncio
    async def test_skipped_during_shutdown(self):
        sink = Mock()
        sink.replace_all = AsyncMock()
        scheduler = make_scheduler(sink, shutting_down=lambda: True)

        scheduler.request_export()
        assert await scheduler.export_now() is False
        await asyncio.sleep(0.05)
        sink.replace_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_export(self):
        sink = Mock()
        sink.replace_all = AsyncMock()
        scheduler = make_scheduler(sink, debounce=0.05)
        scheduler.start()
        assert scheduler.running

        scheduler.request_export()
        await scheduler.stop()
        await asyncio.sleep(0.1)

        assert not scheduler.running
        sink.replace_all.assert_not_awaited()
        scheduler.request_export()
        await asyncio.sleep(0.1)
        sink.replace_all.assert_not_awaited()

class FakeResponse:
    def __init__(self, log=None, label=None, delay=0):
        self.raise_for_status = Mock()
        self._log = log
        self._label = label
        self._delay = delay

    async def __aenter__(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._log is not None:
            self._log.append(self._label)
        return self

    async def __aexit__(self, *exc):
        return False

class TestGoogleSheetsSink:

    @pytest.mark.asyncio
    async def test_clears_then_writes_header_and_rows(self):
        session = Mock(closed=False)
        session.post = Mock(return_value=FakeResponse())
        session.put = Mock(return_value=FakeResponse())
        sink = GoogleSheetsSink("creds.json", "sheet123", "Members", session=session)

        with patch.object(sink, "_access_token", AsyncMock(return_value="tok")):
            await sink.replace_all(EXPORT_COLUMNS, [["1", "user1"]])

        clear_url = session.post.call_args.args[0]
        assert clear_url.endswith("/sheet123/values/Members%21A2%3AI:clear")
        assert session.post.call_args.kwargs["headers"] == {"Authorization": "Bearer tok"}

        put_url = session.put.call_args.args[0]
        assert put_url.endswith("/sheet123/values/Members%21A1%3AI")
        assert session.put.call_args.kwargs["params"] == {"valueInputOption": "RAW"}
        values = session.put.call_args.kwargs["json"]["values"]
        assert values[0] == list(EXPORT_COLUMNS)
        assert values[1] == ["1", "user1"]

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_session_open(self):
        session = Mock(closed=False)
        session.close = AsyncMock()
        sink = GoogleSheetsSink("creds.json", "sheet123", session=session)

        await sink.close()
        session.close.assert_not_awaited()

class TestExportDuringShutdown:

    @staticmethod
    def slow_sheet(log):
        session = Mock(closed=False)
        session.post = Mock(side_effect=lambda *a, **kw: FakeResponse(log, "clear"))
        session.put = Mock(side_effect=lambda *a, **kw: FakeResponse(log, "write", delay=0.2))
        sink = GoogleSheetsSink("creds.json", "sheet123", session=session)
        sink._access_token = AsyncMock(return_value="tok")
        return sink

    @pytest.mark.asyncio
    async def test_stop_between_clear_and_write_keeps_rows(self):
        log = []
        shutting_down = []
        scheduler = make_scheduler(
            self.slow_sheet(log), views=[view(1)], shutting_down=lambda: bool(shutting_down)
        )

        scheduler.request_export()
        await asyncio.sleep(0.1)
        assert log == ["clear"]

        shutting_down.append(True)
        await scheduler.stop()

        assert log == ["clear", "write"]
        assert scheduler.exports_succeeded == 1

    @pytest.mark.asyncio
    async def test_new_request_does_not_cut_started_write(self):
        log = []
        scheduler = make_scheduler(self.slow_sheet(log), views=[view(1)])

        scheduler.request_export()
        await asyncio.sleep(0.1)
        scheduler.request_export()
        await asyncio.sleep(0.6)

        assert log == ["clear", "write", "clear", "write"]
        assert scheduler.exports_succeeded == 2
        await scheduler.stop()
