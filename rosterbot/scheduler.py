"""
Sync Scheduler Module - periodic full re-sync of the roster.

Runs the roster cog's full reconciliation pass on a fixed interval with:
- Lock-based isolation so two full passes never overlap
- A watchdog timeout that abandons a pass stuck on I/O
- Metrics tracking (success/failure counts, durations, last error)
- Anti-spam logging while the bot is not ready yet
- Timeout-bounded stop during shutdown

The export scheduler handles the sheet; a full pass only feeds it through
projection changes, so a dropped export heals within one sync interval.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from discord.ext import tasks

from .core.logger import ComponentLogger

SYNC_TASK_NAME = "full_sync"

# #################################################################################### #
#                            Sync Scheduler Core System
# #################################################################################### #
class RosterSyncScheduler:
    """Periodic driver of the full roster re-sync."""

    def __init__(
        self,
        bot,
        sync: Callable[[], Awaitable[bool]],
        watchdog_threshold_seconds: int = 600,
    ):
        """
        Initialize the scheduler with its lock, metrics and sync coroutine.

        Args:
            bot: Discord bot instance
            sync: Coroutine function running one full pass; returns False when aborted
            watchdog_threshold_seconds: Time after which a pass is abandoned
        """
        self.bot = bot
        self._sync = sync
        self._logger = ComponentLogger("sync_scheduler")
        self._lock = asyncio.Lock()
        self._metrics: Dict[str, Any] = {
            "success": 0,
            "aborted": 0,
            "failures": 0,
            "total_time": 0,
            "last_duration_ms": 0,
            "last_error": None,
            "skipped_not_ready": 0,
            "skipped_locked": 0,
        }
        self._last_run: Optional[str] = None
        self._last_not_ready_log = 0.0
        self._scheduler_running = False
        self._watchdog_threshold_seconds = watchdog_threshold_seconds

    async def run_once(self) -> bool:
        """
        Run one full pass unless the bot is not ready or a pass is in flight.

        Returns:
            True if a pass ran to completion
        """
        if not self.bot.is_ready():
            now = time.perf_counter()
            if now - self._last_not_ready_log > 300:
                self._logger.warning("bot_still_not_ready",
                    message="Bot not ready, full sync skipped",
                )
                self._last_not_ready_log = now
            self._metrics["skipped_not_ready"] += 1
            return False

        if self._lock.locked():
            self._metrics["skipped_locked"] += 1
            self._logger.warning("lock_skipped", task=SYNC_TASK_NAME)
            return False

        async with self._lock:
            return await self._execute_with_monitoring()

    async def _execute_with_monitoring(self) -> bool:
        start_time = time.perf_counter()
        self._last_run = datetime.now(timezone.utc).isoformat()
        self._logger.info("task_started", task=SYNC_TASK_NAME)

        try:
            completed = await asyncio.wait_for(
                self._sync(), timeout=self._watchdog_threshold_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            execution_time = int((time.perf_counter() - start_time) * 1000)
            self._metrics["failures"] += 1
            self._metrics["last_duration_ms"] = execution_time
            self._metrics["last_error"] = {
                "type": type(e).__name__,
                "message": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self._logger.error("task_failed",
                task=SYNC_TASK_NAME,
                duration_ms=execution_time,
                error_type=type(e).__name__,
                error_msg=str(e),
                is_timeout=isinstance(e, asyncio.TimeoutError),
            )
            return False

        execution_time = int((time.perf_counter() - start_time) * 1000)
        self._metrics["last_duration_ms"] = execution_time
        if completed:
            self._metrics["success"] += 1
            self._metrics["total_time"] += execution_time
            self._metrics["last_error"] = None
            self._logger.info("task_finished", task=SYNC_TASK_NAME, duration_ms=execution_time)
        else:
            self._metrics["aborted"] += 1
            self._logger.warning("task_aborted", task=SYNC_TASK_NAME, duration_ms=execution_time)
        return bool(completed)

    # #################################################################################### #
    #                            Health Monitoring and Status
    # #################################################################################### #
    def get_health_status(self) -> Dict[str, Any]:
        """
        Get scheduler health status and metrics.

        Returns:
            Dictionary containing pass metrics, lock state and last run
        """
        total_runs = self._metrics["success"] + self._metrics["failures"] + self._metrics["aborted"]
        avg_ms = self._metrics["total_time"] // self._metrics["success"] if self._metrics["success"] else 0
        return {
            "task_metrics": {
                **self._metrics,
                "avg_ms": avg_ms,
                "total_runs": total_runs,
                "last_run": self._last_run,
            },
            "active_lock": self._lock.locked(),
            "scheduler_running": self._scheduler_running,
        }

# #################################################################################### #
#                            Global Scheduler Components
# #################################################################################### #
_scheduler_instance: Optional[RosterSyncScheduler] = None
_scheduled_task: Optional[tasks.Loop] = None
_scheduler_logger = ComponentLogger("sync_scheduler_global")

def setup_sync_scheduler(bot, sync: Callable[[], Awaitable[bool]], interval_minutes: int = 30):
    """
    Initialize and start the periodic full re-sync.

    The first iteration runs one interval after start; the initial pass is
    driven by on_ready.

    Args:
        bot: Discord bot instance
        sync: Coroutine function running one full pass
        interval_minutes: Minutes between two passes

    Returns:
        RosterSyncScheduler instance
    """
    global _scheduler_instance, _scheduled_task

    if _scheduled_task and _scheduled_task.is_running():
        _scheduler_logger.warning("scheduler_already_running")
        return _scheduler_instance

    scheduler = RosterSyncScheduler(bot, sync)
    _scheduler_instance = scheduler

    @tasks.loop(minutes=interval_minutes)
    async def full_sync_loop():
        await scheduler.run_once()

    @full_sync_loop.before_loop
    async def before_full_sync():
        scheduler._logger.debug("waiting_for_bot")
        await bot.wait_until_ready()
        await asyncio.sleep(interval_minutes * 60)
        scheduler._scheduler_running = True
        scheduler._logger.info("scheduler_started", interval_minutes=interval_minutes)

    @full_sync_loop.after_loop
    async def after_full_sync():
        scheduler._scheduler_running = False
        if full_sync_loop.is_being_cancelled():
            scheduler._logger.info("scheduler_stopped")
        else:
            scheduler._logger.warning("scheduler_stopped_unexpectedly")

    _scheduled_task = full_sync_loop

    try:
        full_sync_loop.start()
        scheduler._logger.info("scheduler_launch_success")
    except RuntimeError as e:
        scheduler._logger.error("scheduler_launch_failed", error=str(e))

    return scheduler

def get_sync_scheduler_health() -> Dict[str, Any]:
    """
    Get current scheduler health status.

    Returns:
        Dictionary containing scheduler health status or error message
    """
    if _scheduler_instance:
        return _scheduler_instance.get_health_status()
    return {"error": "Scheduler not initialized", "scheduler_running": False}

async def stop_sync_scheduler():
    """
    Stop the periodic full re-sync, waiting briefly for the loop to exit.
    """
    global _scheduled_task
    if not _scheduled_task:
        _scheduler_logger.debug("scheduler_not_running")
        return

    _scheduled_task.cancel()

    max_wait = 5.0
    poll_interval = 0.1
    start = time.perf_counter()

    while _scheduled_task.is_running():
        elapsed = time.perf_counter() - start
        if elapsed >= max_wait:
            _scheduler_logger.warning("scheduler_stop_timeout", waited_ms=int(elapsed * 1000))
            break
        await asyncio.sleep(poll_interval)

    if not _scheduled_task.is_running():
        elapsed = time.perf_counter() - start
        _scheduler_logger.info("scheduler_stopped_cleanly", waited_ms=int(elapsed * 1000))
    _scheduled_task = None
