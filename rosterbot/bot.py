"""
Discord Bot - process bootstrap and lifecycle for the roster bot.

Responsibilities:
- Structured logging setup and global exception hooks
- Bot creation with the member intent required for roster tracking
- Extension loading (the roster sync cog)
- Database pool initialization before the gateway connects
- Startup retry with exponential backoff on network errors
- Graceful shutdown on SIGTERM/SIGINT: refuse new store work, stop the
  schedulers (skipping any pending export), close HTTP resources and the pool
"""

import asyncio
import os
import random
import signal
import sys
from typing import Any

import aiohttp
import discord

from . import config
from .core.logger import ComponentLogger, setup_logging
from .db import close_db_pool, configure_circuit_breaker, initialize_db_pool, set_shutting_down

_bot_logger = ComponentLogger("bot")

EXTENSIONS = ("rosterbot.cogs.roster_sync",)
ROSTER_COG_NAME = "RosterSync"
SHUTDOWN_TIMEOUT_SECONDS = 10

# #################################################################################### #
#                               Exception Hooks
# #################################################################################### #
def _global_exception_hook(exc_type, exc_value, exc_tb):
    """
    Global exception handler for uncaught exceptions.

    Args:
        exc_type: Exception type
        exc_value: Exception value
        exc_tb: Exception traceback
    """
    if config.get_debug() and not config.get_production():
        _bot_logger.critical("uncaught_exception", exc_info=(exc_type, exc_value, exc_tb))
    else:
        _bot_logger.critical("uncaught_exception", error_type=exc_type.__name__, error_msg=str(exc_value))

def handle_async_exception(loop, context):
    """
    Handle uncaught exceptions in async tasks.

    Args:
        loop: Event loop where exception occurred
        context: Exception context with details
    """
    exception = context.get("exception")
    if exception:
        _bot_logger.error("uncaught_async_exception", exception=str(exception), exc_info=exception)
    else:
        _bot_logger.error("uncaught_async_exception", message=context["message"])

# #################################################################################### #
#                            Discord Bot Initialization
# #################################################################################### #
intents = discord.Intents.default()
intents.guilds = True
intents.members = True

bot = discord.Bot(intents=intents)

def load_extensions():
    """
    Load the bot extensions.

    Raises:
        SystemExit: If any extension fails to load
    """
    if getattr(bot, "_extensions_loaded", False):
        _bot_logger.debug("extensions_already_loaded")
        return

    for ext in EXTENSIONS:
        try:
            bot.load_extension(ext)
            _bot_logger.debug("extension_loaded", extension=ext)
        except discord.ExtensionError:
            _bot_logger.critical("extension_load_failed", extension=ext, exc_info=True)
            raise SystemExit(1)

    bot._extensions_loaded = True

# #################################################################################### #
#                            Extra Event Hooks
# #################################################################################### #
@bot.event
async def on_disconnect() -> None:
    _bot_logger.warning("gateway_disconnected")

@bot.event
async def on_resumed() -> None:
    _bot_logger.info("gateway_resumed")

@bot.event
async def on_application_command_error(
    ctx: discord.ApplicationContext, error: discord.DiscordException
):
    """Log command failures and tell the user something went wrong."""
    _bot_logger.error("command_failed",
        command=ctx.command.name if ctx.command else "unknown",
        error_type=type(error).__name__,
        error_msg=str(error),
    )
    try:
        await ctx.respond(
            "There was an error processing the command. Please try again.",
            ephemeral=True,
        )
    except discord.HTTPException:
        pass

@bot.event
async def on_ready() -> None:
    _bot_logger.info("bot_connected", username=str(bot.user), user_id=bot.user.id)

# #################################################################################### #
#                            Run and Shutdown
# #################################################################################### #
async def init_database():
    """
    Create the database pool before connecting to the gateway.

    The roster cog runs its first full sync from on_ready, so the pool must
    exist before the first ready event.

    Raises:
        SystemExit: If the pool cannot be created
    """
    if getattr(bot, "_db_pool_initialized", False):
        return
    configure_circuit_breaker()
    if not await initialize_db_pool():
        _bot_logger.critical("database_pool_init_failed", message="Failed to initialize database pool - shutting down")
        raise SystemExit(1)
    bot._db_pool_initialized = True
    _bot_logger.info("database_pool_initialized")

async def run_bot():
    """
    Main bot runner with retry logic for resilient startup.
    """
    load_extensions()
    await init_database()
    max_retries = config.get_max_reconnect_attempts()
    retry_count = 0

    try:
        while retry_count < max_retries:
            try:
                await bot.start(config.get_token())
            except asyncio.CancelledError:
                _bot_logger.info("bot_startup_cancelled")
                break
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError):
                retry_count += 1
                base_wait_time = min(300, 15 * (2 ** (retry_count - 1)))
                jitter = random.uniform(0.1, 0.5) * base_wait_time
                wait_time = base_wait_time + jitter
                _bot_logger.error("network_error_retry",
                    attempt=retry_count,
                    max_retries=max_retries,
                    wait_time_seconds=round(wait_time, 1),
                    exc_info=True
                )
                if retry_count >= max_retries:
                    _bot_logger.critical("max_retries_reached")
                    break
                await bot.close()
                await asyncio.sleep(wait_time)
            except discord.LoginFailure:
                _bot_logger.critical("login_failed", message="Invalid Discord token")
                break
            else:
                break
    finally:
        _bot_logger.info("shutdown_cleanup_started")
        await cleanup_background_tasks()

async def cleanup_background_tasks():
    """
    Stop the roster schedulers and close external resources with timeout bounds.
    """
    set_shutting_down()

    cog: Any = bot.get_cog(ROSTER_COG_NAME)
    if cog is not None:
        try:
            await asyncio.wait_for(cog.shutdown(), timeout=SHUTDOWN_TIMEOUT_SECONDS)
            _bot_logger.debug("roster_background_tasks_stopped")
        except asyncio.TimeoutError:
            _bot_logger.warning("roster_shutdown_timeout",
                timeout_seconds=SHUTDOWN_TIMEOUT_SECONDS,
                message="Forcing shutdown"
            )

    if getattr(bot, "_db_pool_initialized", False):
        try:
            await close_db_pool()
            _bot_logger.debug("database_pool_closed")
        except Exception as e:
            _bot_logger.warning("database_pool_close_error", error=str(e))

def _graceful_exit(sig_name):
    """
    Handle graceful shutdown on system signals.

    Args:
        sig_name: Signal name that triggered shutdown
    """
    _bot_logger.warning("signal_received", signal=sig_name, action="initiating_graceful_shutdown")
    set_shutting_down()

    async def shutdown():
        try:
            await cleanup_background_tasks()
            if not bot.is_closed():
                await bot.close()
            _bot_logger.info("graceful_shutdown_completed")
        except Exception as e:
            _bot_logger.error("shutdown_error", error=str(e), exc_info=True)

    try:
        loop = asyncio.get_running_loop()
        loop.create_task(shutdown())
    except RuntimeError:
        try:
            asyncio.run(shutdown())
        except Exception as e:
            _bot_logger.critical("graceful_shutdown_failed", error=str(e))
            os._exit(1)

def main():
    """Console entry point."""
    setup_logging(config.get_log_file(), debug=config.get_debug())
    sys.excepthook = _global_exception_hook

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    loop.set_exception_handler(handle_async_exception)

    signals_to_handle = []
    if hasattr(signal, "SIGTERM"):
        signals_to_handle.append(signal.SIGTERM)
    if hasattr(signal, "SIGINT"):
        signals_to_handle.append(signal.SIGINT)

    for sig in signals_to_handle:
        try:
            loop.add_signal_handler(sig, _graceful_exit, sig.name)
            _bot_logger.debug("signal_handler_registered", signal=sig.name, method="loop")
        except (NotImplementedError, AttributeError):
            signal.signal(
                sig, lambda signum, frame: _graceful_exit(signal.Signals(signum).name)
            )
            _bot_logger.debug("signal_handler_registered", signal=sig.name, method="signal_module")

    try:
        loop.run_until_complete(run_bot())
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

if __name__ == "__main__":
    main()
