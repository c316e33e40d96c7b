"""
Conversation index tests.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from rosterbot.conversations import ConversationIndex, collect_review_threads, parse_member_id

class TestParseMemberId:

    @pytest.mark.parametrize("name,expected", [
        ("Review - Aria [123]", "123"),
        ("[42]", "42"),
        ("Review [123] extra", None),
        ("Review [abc]", None),
        ("Review", None),
        ("", None),
        (None, None),
    ])
    def test_bracketed_suffix(self, name, expected):
        assert parse_member_id(name) == expected

class TestConversationIndex:
    """Open thread tracking per member."""

    def test_open_thread_is_tracked(self, thread_factory):
        index = ConversationIndex()
        index.on_create(thread_factory(thread_id=7, name="Review [123]"))
        assert index.has("123")
        assert index.has(123)
        assert index.get("123") == 7

    def test_archived_thread_is_untracked(self, thread_factory):
        index = ConversationIndex()
        index.on_create(thread_factory(name="Review [123]"))
        index.on_update(thread_factory(name="Review [123]", archived=True))
        assert not index.has("123")

    def test_locked_thread_is_untracked(self, thread_factory):
        index = ConversationIndex()
        index.on_create(thread_factory(name="Review [123]", locked=True))
        assert not index.has("123")

    def test_unarchive_reopens(self, thread_factory):
        index = ConversationIndex()
        index.on_create(thread_factory(name="Review [123]", archived=True))
        index.on_update(thread_factory(name="Review [123]"))
        assert index.has("123")

    def test_delete(self, thread_factory):
        index = ConversationIndex()
        thread = thread_factory(name="Review [123]")
        index.on_create(thread)
        assert index.on_delete(thread) == "123"
        assert not index.has("123")

    def test_unparseable_name_is_a_no_op(self, thread_factory):
        index = ConversationIndex()
        thread = thread_factory(name="General chat")
        assert index.on_create(thread) is None
        assert index.on_update(thread) is None
        assert index.on_delete(thread) is None
        assert len(index) == 0

    def test_rebuild_replaces_everything(self, thread_factory):
        index = ConversationIndex()
        index.on_create(thread_factory(name="Review [1]"))
        index.rebuild([
            thread_factory(thread_id=10, name="Review [2]"),
            thread_factory(thread_id=11, name="Review [3]", archived=True),
            thread_factory(thread_id=12, name="Review [4]", locked=True),
            thread_factory(thread_id=13, name="Chat"),
        ])
        assert not index.has("1")
        assert index.has("2")
        assert not index.has("3")
        assert not index.has("4")
        assert len(index) == 1

    def test_rebuild_last_thread_wins(self, thread_factory):
        index = ConversationIndex()
        index.rebuild([
            thread_factory(thread_id=10, name="Review [2]"),
            thread_factory(thread_id=20, name="Second review [2]"),
        ])
        assert index.get("2") == 20

class AsyncIter:
    def __init__(self, items):
        self._items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        return self._items.pop(0)

class TestCollectReviewThreads:

    @pytest.mark.asyncio
    async def test_active_threads_filtered_and_archived_added(self, thread_factory):
        active_review = thread_factory(thread_id=1, name="Review [1]", parent_id=700)
        active_other = thread_factory(thread_id=2, name="Other [2]", parent_id=800)
        archived = thread_factory(thread_id=3, name="Review [3]", archived=True, parent_id=700)

        channel = Mock()
        channel.archived_threads = Mock(return_value=AsyncIter([archived]))
        guild = Mock()
        guild.active_threads = AsyncMock(return_value=[active_review, active_other])
        guild.get_channel = Mock(return_value=channel)

        threads = await collect_review_threads(guild, [700])

        assert threads == [active_review, archived]
        channel.archived_threads.assert_called_once_with(private=True, limit=None)
