"""Tests for SessionStore and RecordStore."""

from __future__ import annotations

import pytest

from engram.models.message import ParsedObservation, ParsedSummary
from engram.store.database import ImmutableFieldError, SessionNotFoundError, now_ms


class TestSessionRows:
    async def test_create_or_get_is_idempotent(self, sessions):
        first = await sessions.create_or_get("content-x", project="demo")
        second = await sessions.create_or_get("content-x", project="other")
        assert first.id == second.id
        assert second.project == "demo"
        assert second.status == "active"
        assert second.prompt_counter == 0

    async def test_user_prompt_filled_in_once(self, sessions):
        await sessions.create_or_get("content-x")
        row = await sessions.create_or_get("content-x", user_prompt="first")
        assert row.user_prompt == "first"
        row = await sessions.create_or_get("content-x", user_prompt="second")
        assert row.user_prompt == "first"

    async def test_get_unknown_raises(self, sessions):
        with pytest.raises(SessionNotFoundError):
            await sessions.get(999)
        with pytest.raises(SessionNotFoundError):
            await sessions.get_by_content_id("nope")

    async def test_increment_prompt_counter(self, sessions, session_row):
        assert await sessions.increment_prompt_counter(session_row.id) == 1
        assert await sessions.increment_prompt_counter(session_row.id) == 2
        assert (await sessions.get(session_row.id)).prompt_counter == 2

    async def test_increment_unknown_session_raises(self, sessions):
        with pytest.raises(SessionNotFoundError):
            await sessions.increment_prompt_counter(999)


class TestMemorySessionId:
    async def test_assign_once(self, sessions, session_row):
        await sessions.update_memory_session_id(session_row.id, "mem_1")
        assert (await sessions.get(session_row.id)).memory_session_id == "mem_1"

    async def test_same_value_is_noop(self, sessions, session_row):
        await sessions.update_memory_session_id(session_row.id, "mem_1")
        await sessions.update_memory_session_id(session_row.id, "mem_1")
        assert (await sessions.get(session_row.id)).memory_session_id == "mem_1"

    async def test_different_value_rejected(self, sessions, session_row):
        """The memory-session id is immutable once assigned."""
        await sessions.update_memory_session_id(session_row.id, "mem_1")
        with pytest.raises(ImmutableFieldError):
            await sessions.update_memory_session_id(session_row.id, "mem_2")
        assert (await sessions.get(session_row.id)).memory_session_id == "mem_1"


class TestSessionStatus:
    async def test_mark_completed(self, sessions, session_row):
        assert await sessions.mark_completed(session_row.id) is True
        row = await sessions.get(session_row.id)
        assert row.status == "completed"
        assert row.completed_at_epoch is not None
        assert await sessions.mark_completed(session_row.id) is False

    async def test_fail_stale_by_age(self, db, sessions):
        old = await sessions.create_or_get("content-old")
        fresh = await sessions.create_or_get("content-fresh")
        conn = db.conn()
        await conn.execute(
            "UPDATE sdk_sessions SET started_at_epoch = ? WHERE id = ?",
            (now_ms() - 7 * 3_600_000, old.id),
        )
        await conn.commit()

        failed = await sessions.fail_stale(6 * 3_600_000)
        assert failed == [old.id]
        assert (await sessions.get(old.id)).status == "failed"
        assert (await sessions.get(fresh.id)).status == "active"

    async def test_fail_stale_respects_exclusions(self, db, sessions):
        old = await sessions.create_or_get("content-old")
        conn = db.conn()
        await conn.execute("UPDATE sdk_sessions SET started_at_epoch = 0")
        await conn.commit()
        assert await sessions.fail_stale(1000, exclude_session_ids=[old.id]) == []

    async def test_completed_sessions_are_not_failed(self, db, sessions, session_row):
        await sessions.mark_completed(session_row.id)
        conn = db.conn()
        await conn.execute("UPDATE sdk_sessions SET started_at_epoch = 0")
        await conn.commit()
        assert await sessions.fail_stale(1000) == []

    async def test_status_counts(self, sessions):
        a = await sessions.create_or_get("content-a")
        await sessions.create_or_get("content-b")
        await sessions.mark_completed(a.id)
        assert await sessions.status_counts() == {"active": 1, "completed": 1, "failed": 0}


class TestRecordStore:
    @pytest.fixture
    def observation(self):
        return ParsedObservation(
            type="change",
            title="Added retry",
            narrative="Retries now back off.",
            facts=["three attempts"],
            files_modified=["src/retry.py"],
        )

    async def _claimed(self, pending, session_row, payload) -> int:
        mid = await pending.enqueue(session_row.id, "content-1", "observation", payload())
        await pending.claim_next(session_row.id)
        return mid

    async def test_store_results_commits_records_and_message(
        self, sessions, pending, records, session_row, payload, observation
    ):
        await sessions.update_memory_session_id(session_row.id, "mem_1")
        mid = await self._claimed(pending, session_row, payload)

        stored = await records.store_results(
            memory_session_id="mem_1",
            project="demo",
            observations=[observation],
            summary=ParsedSummary(request="fix", learned="it was the cache"),
            message_ids=[mid],
            prompt_number=1,
            discovery_tokens=42,
        )

        assert len(stored.observation_ids) == 1
        assert stored.summary_id is not None
        assert stored.completed_message_ids == [mid]
        assert (await pending.get(mid)).status == "processed"

        rows = await records.list_observations("mem_1")
        assert rows[0]["title"] == "Added retry"
        assert rows[0]["files_modified"] == ["src/retry.py"]
        assert rows[0]["discovery_tokens"] == 42
        summaries = await records.list_summaries("mem_1")
        assert summaries[0]["learned"] == "it was the cache"

    async def test_duplicate_delivery_inserts_nothing(
        self, sessions, pending, records, session_row, payload, observation
    ):
        """A second commit for an already-processed message is skipped whole."""
        await sessions.update_memory_session_id(session_row.id, "mem_1")
        mid = await self._claimed(pending, session_row, payload)
        kwargs = dict(
            memory_session_id="mem_1",
            project="demo",
            observations=[observation],
            summary=None,
            message_ids=[mid],
        )
        await records.store_results(**kwargs)
        again = await records.store_results(**kwargs)

        assert again.is_empty
        assert again.completed_message_ids == []
        assert len(await records.list_observations("mem_1")) == 1

    async def test_empty_output_still_completes_message(
        self, sessions, pending, records, session_row, payload
    ):
        await sessions.update_memory_session_id(session_row.id, "mem_1")
        mid = await self._claimed(pending, session_row, payload)
        stored = await records.store_results(
            memory_session_id="mem_1",
            project="demo",
            observations=[],
            summary=None,
            message_ids=[mid],
        )
        assert stored.is_empty
        assert stored.completed_message_ids == [mid]
        assert (await pending.get(mid)).status == "processed"
