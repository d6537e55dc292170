"""Tests for the per-session message cache."""

import pytest

from aichat_tabs.cache import MessageCache
from aichat_tabs.core import ChatMessage


@pytest.fixture
def cache(registry, store):
    return MessageCache(registry, store)


def append(*messages):
    return lambda prev: prev + list(messages)


class TestActiveView:
    def test_update_to_active_session_is_displayed(self, registry, cache):
        session = registry.create_session()
        msg = ChatMessage(role="user", content="hi")

        cache.update_messages(session.id, append(msg))

        assert cache.messages == [msg]
        assert cache.get_messages(session.id) == [msg]

    def test_update_to_inactive_session_is_invisible(self, registry, cache):
        a = registry.create_session()
        b = registry.create_session()
        msg = ChatMessage(role="assistant", content="for A")

        cache.update_messages(a.id, append(msg))

        assert registry.active_session_id == b.id
        assert cache.messages == []
        assert cache.get_messages(a.id) == [msg]

    def test_switching_to_cached_session_shows_its_messages(self, registry, cache):
        a = registry.create_session()
        b = registry.create_session()
        msg = ChatMessage(role="user", content="earlier")
        cache.update_messages(a.id, append(msg))
        cache.set_loading(a.id, True)

        registry.open_tab(a.id)

        assert cache.messages == [msg]
        assert cache.is_loading is True

        registry.open_tab(b.id)
        assert cache.is_loading is False

    def test_loading_flag_only_mirrors_active_session(self, registry, cache):
        a = registry.create_session()
        b = registry.create_session()

        cache.set_loading(a.id, True)
        assert cache.is_loading is False
        assert cache.is_session_loading(a.id)

        cache.set_loading(b.id, True)
        assert cache.is_loading is True

        cache.set_loading(b.id, False)
        assert cache.is_loading is False
        assert cache.is_session_loading(a.id)

    def test_no_active_session_shows_nothing(self, registry, cache):
        session = registry.create_session()
        cache.update_messages(session.id, append(ChatMessage(role="user", content="x")))

        registry.set_active_session(None)

        assert cache.messages == []
        assert cache.is_loading is False

    def test_switch_without_event_loop_shows_empty_view(self, registry, cache):
        registry.create_session()
        assert cache.messages == []
        assert cache.is_loading is False

    def test_subscribers_see_every_view_change(self, registry, cache):
        seen = []
        cache.subscribe(lambda messages, loading: seen.append((len(messages), loading)))
        a = registry.create_session()
        b = registry.create_session()

        cache.update_messages(b.id, append(ChatMessage(role="user", content="x")))
        cache.update_messages(a.id, append(ChatMessage(role="user", content="y")))
        cache.set_loading(b.id, True)

        # two empty switches, one visible update, one loading change
        assert seen == [(0, False), (0, False), (1, False), (1, True)]


class TestClearAndForget:
    def test_clear_cancels_stream_and_empties_history(self, registry, cache):
        session = registry.create_session()
        cache.update_messages(session.id, append(ChatMessage(role="user", content="x")))
        cache.set_loading(session.id, True)
        token = cache.tokens.acquire(session.id)

        cache.clear(session.id)

        assert token.cancelled
        assert session.id not in cache.tokens
        assert cache.get_messages(session.id) == []
        assert cache.messages == []
        assert cache.is_loading is False
        assert not cache.is_session_loading(session.id)

    def test_clear_inactive_session_leaves_view(self, registry, cache):
        a = registry.create_session()
        b = registry.create_session()
        visible = ChatMessage(role="user", content="b")
        cache.update_messages(a.id, append(ChatMessage(role="user", content="a")))
        cache.update_messages(b.id, append(visible))

        cache.clear(a.id)

        assert cache.messages == [visible]

    def test_forget_drops_everything(self, registry, cache):
        session = registry.create_session()
        cache.update_messages(session.id, append(ChatMessage(role="user", content="x")))
        token = cache.tokens.acquire(session.id)

        cache.forget(session.id)

        assert token.cancelled
        assert cache.get_messages(session.id) == []


class TestHydration:
    @pytest.mark.asyncio
    async def test_loads_stored_history_on_switch(self, registry, store, cache):
        await store.create_session("s1", "Stored")
        await store.append_message("s1", "user", "hello")
        await store.append_message("s1", "assistant", "hi there", "m")

        registry.create_session("Stored", session_id="s1")
        assert cache.is_loading is True

        await cache.wait_hydrated()

        assert [m.content for m in cache.messages] == ["hello", "hi there"]
        assert cache.is_loading is False
        assert [m.content for m in cache.get_messages("s1")] == ["hello", "hi there"]

    @pytest.mark.asyncio
    async def test_missing_history_becomes_empty(self, registry, cache):
        registry.create_session(session_id="not-stored")

        await cache.wait_hydrated()

        assert cache.messages == []
        assert cache.is_loading is False

    @pytest.mark.asyncio
    async def test_stale_load_is_not_displayed(self, registry, store, cache):
        await store.create_session("s1", "First")
        await store.append_message("s1", "user", "from s1")

        registry.create_session(session_id="s1")
        registry.create_session(session_id="s2")
        await cache.wait_hydrated()

        assert registry.active_session_id == "s2"
        assert cache.messages == []
        assert [m.content for m in cache.get_messages("s1")] == ["from s1"]

    @pytest.mark.asyncio
    async def test_local_messages_win_over_late_load(self, registry, store, cache):
        await store.create_session("s1", "First")
        await store.append_message("s1", "user", "stored")

        registry.create_session(session_id="s1")
        local = ChatMessage(role="user", content="typed meanwhile")
        cache.update_messages("s1", append(local))
        await cache.wait_hydrated()

        assert cache.messages == [local]

    @pytest.mark.asyncio
    async def test_load_for_deleted_session_is_dropped(self, registry, store, cache):
        await store.create_session("s1", "First")
        await store.append_message("s1", "user", "stored")

        registry.create_session(session_id="s1")
        registry.delete_session("s1")
        await cache.wait_hydrated()

        assert cache.get_messages("s1") == []
        assert cache.messages == []
