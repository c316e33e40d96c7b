"""
Conversation Index - open review threads per member.

Review threads are named with the reviewed member's id as a bracketed suffix,
for example ``"Review - Aria [107391298171891712]"``. The index maps that member
id to the thread id while the thread is neither archived nor locked. Threads
without a parseable suffix are not tracked.
"""

import re
from typing import Any, Dict, Iterable, List, Optional

import discord

from .core.logger import ComponentLogger

_logger = ComponentLogger("conversations")

THREAD_MEMBER_PATTERN = re.compile(r"\[(\d+)\]$")

def parse_member_id(thread_name: Optional[str]) -> Optional[str]:
    """Return the member id encoded at the end of a thread name, if any."""
    if not thread_name:
        return None
    match = THREAD_MEMBER_PATTERN.search(thread_name)
    return match.group(1) if match else None

def is_open(thread: Any) -> bool:
    return not getattr(thread, "archived", False) and not getattr(thread, "locked", False)

class ConversationIndex:
    """Secondary index from member id to the id of their open review thread."""

    def __init__(self) -> None:
        self._open_threads: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._open_threads)

    def has(self, member_id: Any) -> bool:
        return str(member_id) in self._open_threads

    def get(self, member_id: Any) -> Optional[int]:
        return self._open_threads.get(str(member_id))

    def rebuild(self, threads: Iterable[Any]) -> None:
        """
        Replace the whole index from a scan of known threads.

        When several open threads name the same member, the last one wins.
        """
        self._open_threads.clear()
        for thread in threads:
            member_id = parse_member_id(thread.name)
            if member_id and is_open(thread):
                self._open_threads[member_id] = thread.id
        _logger.info("conversation_index_rebuilt", open_threads=len(self._open_threads))

    def on_create(self, thread: Any) -> Optional[str]:
        """Track a newly created thread. Returns the parsed member id, if any."""
        return self._apply(thread)

    def on_update(self, thread: Any) -> Optional[str]:
        """Re-evaluate a thread after a state change. Returns the parsed member id."""
        return self._apply(thread)

    def on_delete(self, thread: Any) -> Optional[str]:
        """Forget a deleted thread. Returns the parsed member id, if any."""
        member_id = parse_member_id(thread.name)
        if member_id:
            self._open_threads.pop(member_id, None)
        return member_id

    def _apply(self, thread: Any) -> Optional[str]:
        member_id = parse_member_id(thread.name)
        if not member_id:
            return None

        if is_open(thread):
            self._open_threads[member_id] = thread.id
            _logger.debug("thread_active", thread_id=thread.id, member_id=member_id)
        elif self._open_threads.pop(member_id, None) is not None:
            _logger.debug("thread_inactive", thread_id=thread.id, member_id=member_id)
        return member_id

async def collect_review_threads(
    guild: discord.Guild, channel_ids: Iterable[int]
) -> List[discord.Thread]:
    """
    Gather the active threads and archived private threads of review channels.

    Channels that cannot be fetched or read are skipped with a warning.
    """
    wanted = set(channel_ids)
    threads: List[discord.Thread] = [
        thread for thread in await guild.active_threads() if thread.parent_id in wanted
    ]

    for channel_id in wanted:
        channel = guild.get_channel(channel_id)
        if channel is None:
            try:
                channel = await guild.fetch_channel(channel_id)
            except discord.HTTPException as e:
                _logger.warning("review_channel_unavailable", channel_id=channel_id, error=str(e))
                continue

        try:
            async for thread in channel.archived_threads(private=True, limit=None):
                threads.append(thread)
        except discord.HTTPException as e:
            _logger.warning("archived_threads_unavailable", channel_id=channel_id, error=str(e))

    _logger.debug("review_threads_collected", thread_count=len(threads))
    return threads
