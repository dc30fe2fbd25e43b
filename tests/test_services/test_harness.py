"""Tests for the script execution harness."""

import asyncio
import re
from unittest.mock import AsyncMock, patch

import pytest

from script_tracker.core.errors import PersistenceError
from script_tracker.models import ExecutedScript, ScriptStatus
from script_tracker.scripts import OneOffScript, ScriptContext
from script_tracker.services.harness import (
    SKIPPED_DEFAULT_MESSAGE,
    RunOutcome,
    RunResult,
    ScriptHarness,
    format_error,
)


class TestSuccess:
    """Tests for bodies that complete normally."""

    @pytest.mark.asyncio
    async def test_records_success(self, harness, store):
        async def body(ctx):
            await asyncio.sleep(0.01)

        result = await harness.run("test.py", body)

        assert result.success is True
        assert result.outcome is RunOutcome.SUCCESS
        assert result.lock_acquired is True
        assert re.fullmatch(r"Script completed successfully in \d+\.\d{2}s", result.output)
        assert 0.01 <= result.duration < 1

        record = await store.get("test.py")
        assert record.status == ScriptStatus.SUCCESS
        assert record.output == result.output
        assert record.duration_seconds == pytest.approx(result.duration)

    @pytest.mark.asyncio
    async def test_body_sees_running_record(self, harness):
        seen = {}

        async def body(ctx: ScriptContext):
            seen["status"] = ctx.record.status
            seen["identifier"] = ctx.identifier

        await harness.run("test.py", body)

        assert seen == {"status": ScriptStatus.RUNNING, "identifier": "test.py"}

    @pytest.mark.asyncio
    async def test_body_without_context_argument(self, harness):
        calls = []

        async def body():
            calls.append(1)

        result = await harness.run("test.py", body)

        assert result.success is True
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_sync_body(self, harness):
        calls = []
        result = await harness.run("test.py", lambda ctx: calls.append(ctx.identifier))

        assert result.success is True
        assert calls == ["test.py"]

    @pytest.mark.asyncio
    async def test_lock_released(self, harness, lock_manager):
        await harness.run("test.py", lambda: None)

        assert lock_manager.is_held("test.py") is False

    @pytest.mark.asyncio
    async def test_body_writes_are_committed(self, harness, store):
        async def body(ctx):
            ctx.session.add(ExecutedScript(identifier="written_by_body"))

        await harness.run("test.py", body)

        assert await store.exists("written_by_body") is True


class TestSkip:
    """Tests for bodies that skip."""

    @pytest.mark.asyncio
    async def test_skip_with_reason(self, harness, store):
        async def body(ctx):
            ctx.skip("already migrated")

        result = await harness.run("test.py", body)

        assert result.outcome is RunOutcome.SKIPPED
        assert result.skipped is True
        assert result.success is False
        assert result.output == "already migrated"

        record = await store.get("test.py")
        assert record.status == ScriptStatus.SKIPPED
        assert record.output == "already migrated"
        assert record.duration_seconds is not None

    @pytest.mark.asyncio
    async def test_skip_without_reason(self, harness, store):
        async def body(ctx):
            ctx.skip()

        result = await harness.run("test.py", body)

        assert result.output == SKIPPED_DEFAULT_MESSAGE
        record = await store.get("test.py")
        assert record.output == "Script was skipped (no action needed)"

    @pytest.mark.asyncio
    async def test_skip_commits_prior_writes(self, harness, store):
        """Work done before a skip is kept."""

        async def body(ctx):
            ctx.session.add(ExecutedScript(identifier="before_skip"))
            await ctx.session.flush()
            ctx.skip("nothing left to do")

        result = await harness.run("test.py", body)

        assert result.skipped is True
        assert await store.exists("before_skip") is True


class TestFailure:
    """Tests for bodies that raise."""

    @pytest.mark.asyncio
    async def test_records_failure(self, harness, store, lock_manager):
        async def body(ctx):
            raise RuntimeError("boom")

        result = await harness.run("test.py", body)

        assert result.outcome is RunOutcome.FAILED
        assert result.output.startswith("RuntimeError: boom")
        assert result.timed_out is False
        assert result.exit_code == 1
        assert lock_manager.is_held("test.py") is False

        record = await store.get("test.py")
        assert record.status == ScriptStatus.FAILED
        assert record.output.startswith("RuntimeError: boom")

    @pytest.mark.asyncio
    async def test_failure_rolls_back_body_writes(self, harness, store):
        async def body(ctx):
            ctx.session.add(ExecutedScript(identifier="rolled_back"))
            await ctx.session.flush()
            raise ValueError("bad data")

        await harness.run("test.py", body)

        assert await store.exists("rolled_back") is False
        assert await store.exists("test.py") is True

    @pytest.mark.asyncio
    async def test_plain_timeout_error_is_a_failure(self, harness):
        """A TimeoutError from the body's own I/O is not the harness timeout."""

        async def body(ctx):
            raise TimeoutError("upstream API timed out")

        result = await harness.run("test.py", body)

        assert result.outcome is RunOutcome.FAILED
        assert result.timed_out is False
        assert result.output.startswith("TimeoutError: upstream API timed out")


class TestTimeout:
    """Tests for the forced and cooperative timeouts."""

    @pytest.mark.asyncio
    async def test_forced_timeout(self, harness, store, lock_manager):
        async def body(ctx):
            await asyncio.sleep(5)

        result = await harness.run("slow.py", body, timeout_seconds=0.1)

        assert result.outcome is RunOutcome.FAILED
        assert result.timed_out is True
        assert result.output == "Script execution exceeded timeout of 0.1 seconds"
        assert result.duration < 5
        assert lock_manager.is_held("slow.py") is False

        record = await store.get("slow.py")
        assert record.status == ScriptStatus.FAILED
        assert "exceeded timeout of 0.1" in record.output
        assert record.timeout_seconds == 0.1

    @pytest.mark.asyncio
    async def test_timeout_rolls_back_body_writes(self, harness, store):
        async def body(ctx):
            ctx.session.add(ExecutedScript(identifier="half_done"))
            await ctx.session.flush()
            await asyncio.sleep(5)

        await harness.run("slow.py", body, timeout_seconds=0.1)

        assert await store.exists("half_done") is False

    @pytest.mark.asyncio
    async def test_cooperative_timeout(self, harness, store):
        async def body(ctx):
            ctx.check_timeout(max_duration=0.01)
            await asyncio.sleep(0.05)
            ctx.check_timeout(max_duration=0.01)

        result = await harness.run("test.py", body)

        assert result.outcome is RunOutcome.FAILED
        assert result.timed_out is True
        assert result.output.startswith("Script execution exceeded 0.01 seconds (elapsed: ")

    @pytest.mark.asyncio
    async def test_disabled_timeout(self, harness, store):
        result = await harness.run("test.py", lambda: None, timeout_seconds=None)

        assert result.success is True
        record = await store.get("test.py")
        assert record.timeout_seconds is None

    @pytest.mark.asyncio
    async def test_default_timeout_recorded(self, harness, store):
        await harness.run("test.py", lambda: None)

        record = await store.get("test.py")
        assert record.timeout_seconds == 300


class TestLockContention:
    """Tests for runs that cannot take the lock."""

    @pytest.mark.asyncio
    async def test_body_not_run_when_locked(self, harness, store, lock_manager):
        await lock_manager.try_acquire("test.py")
        calls = []

        result = await harness.run("test.py", lambda: calls.append(1))

        assert result.outcome is RunOutcome.LOCK_UNAVAILABLE
        assert result.lock_acquired is False
        assert result.output == "Script test.py is already running"
        assert result.duration is None
        assert calls == []
        assert await store.exists("test.py") is False

    @pytest.mark.asyncio
    async def test_running_record_elsewhere(self, harness, record_factory):
        await record_factory("test.py", status=ScriptStatus.RUNNING)

        result = await harness.run("test.py", lambda: None)

        assert result.outcome is RunOutcome.LOCK_UNAVAILABLE


class TestRecordKeeping:
    """Tests for run record failures around the body."""

    @pytest.mark.asyncio
    async def test_existing_record_blocks_run(self, harness, record_factory, lock_manager):
        """A finished record for the identifier means the body never runs."""
        await record_factory("done.py", status=ScriptStatus.SUCCESS)
        calls = []

        result = await harness.run("done.py", lambda: calls.append(1))

        assert result.outcome is RunOutcome.FAILED
        assert "already exists" in result.output
        assert calls == []
        assert lock_manager.is_held("done.py") is False

    @pytest.mark.asyncio
    async def test_outcome_write_failure_still_releases_lock(self, harness, store, lock_manager):
        with patch.object(
            store, "mark_success", AsyncMock(side_effect=PersistenceError("disk full"))
        ):
            result = await harness.run("test.py", lambda: None)

        assert result.success is True
        assert lock_manager.is_held("test.py") is False
        record = await store.get("test.py")
        assert record.status == ScriptStatus.RUNNING


class TestRunScript:
    """Tests for run_script with OneOffScript subclasses."""

    @pytest.mark.asyncio
    async def test_uses_script_timeout(self, harness, store):
        class Quick(OneOffScript):
            timeout = 42

            async def execute(self, ctx):
                ctx.log("working")

        result = await harness.run_script("quick.py", Quick())

        assert result.success is True
        record = await store.get("quick.py")
        assert record.timeout_seconds == 42

    @pytest.mark.asyncio
    async def test_unset_timeout_inherits_default(self, session_factory, store, lock_manager):
        harness = ScriptHarness(session_factory, store, lock_manager, default_timeout=120)

        class Plain(OneOffScript):
            async def execute(self, ctx):
                ctx.log("working")

        result = await harness.run_script("plain.py", Plain())

        assert result.success is True
        record = await store.get("plain.py")
        assert record.timeout_seconds == 120

    @pytest.mark.asyncio
    async def test_inherited_default_forces_timeout(self, session_factory, store, lock_manager):
        harness = ScriptHarness(session_factory, store, lock_manager, default_timeout=0.1)

        class Slow(OneOffScript):
            async def execute(self, ctx):
                await asyncio.sleep(5)

        result = await harness.run_script("slow.py", Slow())

        assert result.outcome is RunOutcome.FAILED
        assert result.timed_out is True
        record = await store.get("slow.py")
        assert record.status == ScriptStatus.FAILED
        assert record.timeout_seconds == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_timeout_none_overrides_default(self, session_factory, store, lock_manager):
        harness = ScriptHarness(session_factory, store, lock_manager, default_timeout=120)

        class Unbounded(OneOffScript):
            timeout = None

            async def execute(self, ctx):
                pass

        await harness.run_script("unbounded.py", Unbounded())

        record = await store.get("unbounded.py")
        assert record.timeout_seconds is None

    @pytest.mark.asyncio
    async def test_unimplemented_script_fails(self, harness):
        result = await harness.run_script("empty.py", OneOffScript())

        assert result.outcome is RunOutcome.FAILED
        assert "NotImplementedError: Subclasses must implement the execute method" in result.output

    @pytest.mark.asyncio
    async def test_zero_default_disables_timeout(self, session_factory, store, lock_manager):
        harness = ScriptHarness(session_factory, store, lock_manager, default_timeout=0)

        await harness.run("test.py", lambda: None)

        record = await store.get("test.py")
        assert record.timeout_seconds is None


class TestRunResult:
    """Tests for RunResult and error formatting."""

    def test_exit_codes(self):
        assert RunResult("a.py", RunOutcome.SUCCESS, "").exit_code == 0
        assert RunResult("a.py", RunOutcome.SKIPPED, "").exit_code == 1
        assert RunResult("a.py", RunOutcome.FAILED, "").exit_code == 1
        assert RunResult("a.py", RunOutcome.LOCK_UNAVAILABLE, "").exit_code == 1

    def test_format_error_limits_frames(self):
        def recurse(n):
            if n == 0:
                raise RuntimeError("deep")
            recurse(n - 1)

        try:
            recurse(30)
        except RuntimeError as e:
            formatted = format_error(e)

        lines = formatted.splitlines()
        assert lines[0] == "RuntimeError: deep"
        assert sum(1 for line in lines if line.strip().startswith("File ")) == 10

    def test_format_error_without_traceback(self):
        assert format_error(ValueError("bad")) == "ValueError: bad"
