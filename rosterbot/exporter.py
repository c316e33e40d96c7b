"""
Export Scheduler - debounced, periodic, retried export of the roster.

Every projection change calls request_export(). Requests inside the debounce
window collapse into a single export; a periodic export runs regardless, as a
safety net for lost triggers. An export snapshots the projection, sorts it and
replaces the sink's contents in full. A failed export is retried a bounded
number of times with a fixed delay, then dropped until the next cycle.

The default sink is a Google Sheets tab written through the Sheets v4 REST API.
"""

import asyncio
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote

import aiohttp
import google.auth.transport.requests
from google.oauth2 import service_account

from .core.logger import ComponentLogger
from .core.reliability import RetryManager
from .roster import MemberView

_logger = ComponentLogger("exporter")

class ExportSkipped(Exception):
    """The export was abandoned because the process is shutting down."""
    pass

EXPORT_COLUMNS: Tuple[str, ...] = (
    "Discord ID",
    "Username",
    "Registered Name",
    "Guild",
    "Class",
    "Weapon Role",
    "Weapon Name",
    "Has Open Thread",
    "Last Updated",
)

# #################################################################################### #
#                            Row Building
# #################################################################################### #
def export_sort_key(view: MemberView) -> tuple:
    """Affiliation, then registered name, nulls last, member id as tie-break."""
    return (
        view.affiliation is None,
        view.affiliation or "",
        view.registered_name is None,
        view.registered_name or "",
        view.member_id,
    )

def view_to_row(view: MemberView) -> List[Any]:
    return [
        view.member_id,
        view.username or "",
        view.registered_name or "",
        view.affiliation or "",
        view.class_category or "",
        str(view.weapon_role_id) if view.weapon_role_id is not None else "",
        view.weapon_primary or "",
        view.has_open_conversation,
        view.last_updated.isoformat(),
    ]

def build_rows(views: Sequence[MemberView]) -> List[List[Any]]:
    return [view_to_row(view) for view in sorted(views, key=export_sort_key)]

# #################################################################################### #
#                            Report Sinks
# #################################################################################### #
class ReportSink(Protocol):
    async def replace_all(self, header: Sequence[str], rows: List[List[Any]]) -> None:
        ...

class GoogleSheetsSink:
    """
    Write the roster to one tab of a Google spreadsheet.

    The data rows are cleared first, then header and rows are written from A1.
    Authentication uses a service-account key file; token refresh is blocking
    in google-auth and runs in a worker thread.
    """

    API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
    SCOPES = ("https://www.googleapis.com/auth/spreadsheets",)

    def __init__(
        self,
        credentials_file: str,
        sheet_id: str,
        tab: str = "Members",
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: int = 30,
    ) -> None:
        self.sheet_id = sheet_id
        self.tab = tab
        self._credentials_file = credentials_file
        self._credentials = None
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _range_url(self, cell_range: str, suffix: str = "") -> str:
        encoded = quote(f"{self.tab}!{cell_range}", safe="")
        return f"{self.API_URL}/{self.sheet_id}/values/{encoded}{suffix}"

    async def _access_token(self) -> str:
        if self._credentials is None:
            self._credentials = service_account.Credentials.from_service_account_file(
                self._credentials_file, scopes=list(self.SCOPES)
            )
        if not self._credentials.valid:
            await asyncio.to_thread(
                self._credentials.refresh, google.auth.transport.requests.Request()
            )
        return self._credentials.token

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def replace_all(self, header: Sequence[str], rows: List[List[Any]]) -> None:
        headers = {"Authorization": f"Bearer {await self._access_token()}"}
        session = self._get_session()

        async with session.post(self._range_url("A2:I", ":clear"), headers=headers) as resp:
            resp.raise_for_status()

        body = {"majorDimension": "ROWS", "values": [list(header), *rows]}
        async with session.put(
            self._range_url("A1:I"),
            params={"valueInputOption": "RAW"},
            json=body,
            headers=headers,
        ) as resp:
            resp.raise_for_status()

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

# #################################################################################### #
#                            Export Scheduler
# #################################################################################### #
class ExportScheduler:
    """Own the debounce timer and the periodic export task."""

    def __init__(
        self,
        snapshot: Callable[[], Sequence[MemberView]],
        sink: ReportSink,
        debounce_seconds: float = 5.0,
        periodic_seconds: float = 300.0,
        max_attempts: int = 3,
        retry_delay: float = 3.0,
        shutting_down: Callable[[], bool] = lambda: False,
        retry_manager: Optional[RetryManager] = None,
        stop_timeout_seconds: float = 5.0,
    ) -> None:
        self._snapshot = snapshot
        self._sink = sink
        self.debounce_seconds = debounce_seconds
        self.periodic_seconds = periodic_seconds
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._shutting_down = shutting_down
        self._retry = retry_manager or RetryManager()
        self._debounce_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self.stop_timeout_seconds = stop_timeout_seconds
        self._export_lock = asyncio.Lock()
        self._exporting_task: Optional[asyncio.Task] = None
        self._stopped = False
        self.exports_succeeded = 0
        self.exports_failed = 0

    @property
    def running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    def start(self) -> None:
        """Start the periodic export. Calling it twice is a no-op."""
        if self.running:
            _logger.debug("export_scheduler_already_running")
            return
        self._stopped = False
        self._periodic_task = asyncio.create_task(self._periodic_loop(), name="roster_export_periodic")
        _logger.info("export_scheduler_started",
            debounce_seconds=self.debounce_seconds,
            periodic_seconds=self.periodic_seconds,
        )

    async def stop(self) -> None:
        """
        Cancel the pending debounce timer and the periodic task.

        A sink write already in progress is allowed to finish, bounded by
        stop_timeout_seconds; no further attempt is started after it.
        """
        self._stopped = True
        exporting = self._exporting_task
        pending = [
            t for t in (self._debounce_task, self._periodic_task)
            if t and not t.done() and t is not exporting
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if exporting is not None and not exporting.done():
            _, still_running = await asyncio.wait({exporting}, timeout=self.stop_timeout_seconds)
            if still_running:
                _logger.warning("export_stop_timeout", timeout_seconds=self.stop_timeout_seconds)
                exporting.cancel()

        self._debounce_task = None
        self._periodic_task = None
        _logger.info("export_scheduler_stopped")

    def request_export(self) -> None:
        """Schedule an export after the debounce window, restarting any pending timer."""
        if self._stopped or self._shutting_down():
            return
        pending = self._debounce_task
        if pending and not pending.done() and pending is not self._exporting_task:
            pending.cancel()
        self._debounce_task = asyncio.create_task(self._debounced(), name="roster_export_debounce")

    async def _debounced(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        await self.export_now()

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.periodic_seconds)
            await self.export_now()

    async def export_now(self) -> bool:
        """
        Export the current projection with bounded retries.

        Returns:
            True if the sink accepted the export, False if it was skipped or failed
        """
        if self._shutting_down():
            _logger.info("export_skipped_shutdown")
            return False

        async with self._export_lock:
            self._exporting_task = asyncio.current_task()
            try:
                rows = build_rows(self._snapshot())

                async def write():
                    if self._stopped or self._shutting_down():
                        raise ExportSkipped("shutdown in progress")
                    # The clear and the write must land together; cancelling the
                    # caller never interrupts a started write.
                    await asyncio.shield(self._sink.replace_all(EXPORT_COLUMNS, rows))

                try:
                    await self._retry.retry_with_backoff(
                        write,
                        max_attempts=self.max_attempts,
                        base_delay=self.retry_delay,
                        exponential_base=1.0,
                        exclude_on=(ExportSkipped,),
                    )
                except ExportSkipped:
                    _logger.info("export_skipped_shutdown", row_count=len(rows))
                    return False
                except Exception as e:
                    self.exports_failed += 1
                    _logger.error("export_failed",
                        attempts=self.max_attempts,
                        row_count=len(rows),
                        error_type=type(e).__name__,
                        error_msg=str(e),
                    )
                    return False
            finally:
                self._exporting_task = None

        self.exports_succeeded += 1
        _logger.info("export_completed", row_count=len(rows))
        return True
