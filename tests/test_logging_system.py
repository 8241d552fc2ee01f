"""Tests for the logging module: LogLevel, LogEntry, AgentLogger, ComponentLogger."""

import json
import logging
from datetime import datetime, timezone

import pytest

from social_publisher.exceptions import DatabaseError
from social_publisher.logging import (
    AgentLogger,
    ComponentLogger,
    LogComponent,
    LogEntry,
    LogLevel,
)


# ---------------------------------------------------------------------------
# Fixed timestamp used across all tests for determinism
# ---------------------------------------------------------------------------
FIXED_TS = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class _RecordingDB:
    def __init__(self, fail: bool = False) -> None:
        self.rows = []
        self.fail = fail

    async def save_agent_log(self, row):
        if self.fail:
            raise DatabaseError("agent_logs unavailable")
        self.rows.append(row)
        return row


# ===================================================================
# LogLevel
# ===================================================================


class TestLogLevel:
    def test_numeric_values_order_by_severity(self) -> None:
        ordered = sorted(LogLevel, key=lambda lvl: lvl.value)
        assert ordered == [
            LogLevel.DEBUG,
            LogLevel.INFO,
            LogLevel.WARNING,
            LogLevel.ERROR,
            LogLevel.CRITICAL,
        ]

    def test_values_match_stdlib_levels(self) -> None:
        assert LogLevel.WARNING.value == logging.WARNING
        assert LogLevel.CRITICAL.value == logging.CRITICAL

    def test_name_str_returns_lowercase(self) -> None:
        assert LogLevel.WARNING.name_str == "warning"


class TestLogComponent:
    @pytest.mark.parametrize(
        "value",
        ["queue", "state_machine", "dispatch", "token_manager", "maintenance"],
    )
    def test_pipeline_components_exist(self, value) -> None:
        assert LogComponent(value).value == value


# ===================================================================
# LogEntry
# ===================================================================


class TestLogEntry:
    """Verify LogEntry serialization."""

    @staticmethod
    def _entry(**kwargs) -> LogEntry:
        defaults = dict(
            timestamp=FIXED_TS,
            level=LogLevel.INFO,
            component=LogComponent.QUEUE,
            message="Job enqueued",
        )
        defaults.update(kwargs)
        return LogEntry(**defaults)

    def test_optional_fields_default_to_none(self) -> None:
        entry = self._entry()
        assert entry.job_id is None
        assert entry.post_id is None
        assert entry.duration_ms is None
        assert entry.data == {}

    def test_data_default_is_independent_per_instance(self) -> None:
        first = self._entry()
        second = self._entry()
        first.data["key"] = "value"
        assert second.data == {}

    def test_to_dict_values(self) -> None:
        entry = self._entry(post_id="post-1", job_id="post-post-1", data={"delay_ms": 0})

        row = entry.to_dict()

        assert row["timestamp"] == "2025-01-01T12:00:00+00:00"
        assert row["level"] == 20
        assert row["level_name"] == "info"
        assert row["component"] == "queue"
        assert row["post_id"] == "post-1"
        assert row["job_id"] == "post-post-1"
        assert row["data"] == {"delay_ms": 0}

    def test_to_json_matches_to_dict(self) -> None:
        entry = self._entry(data={"when": FIXED_TS})

        parsed = json.loads(entry.to_json())

        assert parsed["message"] == "Job enqueued"
        # Non-JSON values fall back to str()
        assert parsed["data"]["when"] == str(FIXED_TS)

    def test_to_readable_full_format(self) -> None:
        entry = self._entry(
            level=LogLevel.WARNING, post_id="post-1", duration_ms=42
        )
        assert entry.to_readable() == (
            "[WARN] [12:00:00] [queue] Job enqueued post=post-1 (42ms)"
        )

    def test_to_readable_excludes_duration_when_not_set(self) -> None:
        assert "ms)" not in self._entry().to_readable()


# ===================================================================
# AgentLogger
# ===================================================================


class TestAgentLogger:
    @pytest.mark.asyncio
    async def test_writes_main_and_error_files(self, tmp_path) -> None:
        agent_logger = AgentLogger(log_dir=str(tmp_path))

        await agent_logger.info(LogComponent.QUEUE, "Job enqueued")
        await agent_logger.error(LogComponent.DISPATCH, "Publish failed")

        main_lines = (tmp_path / "pipeline.log").read_text(encoding="utf-8").splitlines()
        error_lines = (tmp_path / "errors.log").read_text(encoding="utf-8").splitlines()
        assert len(main_lines) == 2
        assert len(error_lines) == 1
        assert json.loads(error_lines[0])["component"] == "dispatch"
        assert not (tmp_path / "debug.log").exists()

    @pytest.mark.asyncio
    async def test_error_details_captured(self, tmp_path) -> None:
        agent_logger = AgentLogger(log_dir=str(tmp_path))
        try:
            raise ValueError("bad payload")
        except ValueError as exc:
            entry = await agent_logger.log(
                LogLevel.ERROR, LogComponent.QUEUE, "Job crashed", error=exc
            )

        assert entry.error_type == "ValueError"
        assert "bad payload" in entry.error_traceback

    @pytest.mark.asyncio
    async def test_supabase_respects_min_level(self, tmp_path) -> None:
        db = _RecordingDB()
        agent_logger = AgentLogger(log_dir=str(tmp_path), db=db, min_level=LogLevel.WARNING)

        await agent_logger.info(LogComponent.QUEUE, "quiet")
        await agent_logger.warning(LogComponent.QUEUE, "loud", post_id="post-1")
        await agent_logger.flush()

        assert [row["message"] for row in db.rows] == ["loud"]
        assert db.rows[0]["post_id"] == "post-1"

    @pytest.mark.asyncio
    async def test_supabase_failure_does_not_raise(self, tmp_path) -> None:
        agent_logger = AgentLogger(log_dir=str(tmp_path), db=_RecordingDB(fail=True))

        await agent_logger.error(LogComponent.DATABASE, "still logged")
        await agent_logger.flush()

        assert "still logged" in (tmp_path / "pipeline.log").read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_get_recent_filters_and_ring_buffer(self, tmp_path) -> None:
        agent_logger = AgentLogger(log_dir=str(tmp_path), max_recent=3)

        for i in range(4):
            await agent_logger.info(LogComponent.QUEUE, f"msg-{i}", post_id=f"p{i}")
        await agent_logger.info(LogComponent.DISPATCH, "dispatch", post_id="p3")

        assert [e.message for e in agent_logger.get_recent()] == ["msg-2", "msg-3", "dispatch"]
        assert [e.message for e in agent_logger.get_recent(component=LogComponent.QUEUE)] == [
            "msg-2",
            "msg-3",
        ]
        assert len(agent_logger.get_recent(post_id="p3")) == 2

    @pytest.mark.asyncio
    async def test_custom_handler_receives_entries(self, tmp_path) -> None:
        agent_logger = AgentLogger(log_dir=str(tmp_path))
        seen = []
        agent_logger.add_handler(seen.append)

        await agent_logger.debug(LogComponent.CONFIG, "loaded")

        assert [e.message for e in seen] == ["loaded"]
        assert (tmp_path / "debug.log").exists()


# ===================================================================
# ComponentLogger / TimedOperation
# ===================================================================


class TestComponentLogger:
    @pytest.mark.asyncio
    async def test_without_sink_uses_stdlib(self, caplog) -> None:
        log = ComponentLogger(LogComponent.QUEUE)

        with caplog.at_level(logging.INFO, logger="social_publisher.queue"):
            await log.info("Job enqueued", post_id="post-1")

        assert "[QUEUE] Job enqueued post=post-1" in caplog.text

    @pytest.mark.asyncio
    async def test_binds_component_on_sink(self, tmp_path) -> None:
        sink = AgentLogger(log_dir=str(tmp_path))
        log = ComponentLogger(LogComponent.TOKEN_MANAGER, sink)

        await log.warning("Refresh failed", profile_id="profile-1", data={"platform": "tiktok"})

        [entry] = sink.get_recent()
        assert entry.component is LogComponent.TOKEN_MANAGER
        assert entry.profile_id == "profile-1"
        assert entry.data == {"platform": "tiktok"}

    @pytest.mark.asyncio
    async def test_timed_logs_duration(self, tmp_path) -> None:
        sink = AgentLogger(log_dir=str(tmp_path))
        log = ComponentLogger(LogComponent.MAINTENANCE, sink)

        async with log.timed("Token sweep"):
            pass

        start, done = sink.get_recent()
        assert start.message == "Starting: Token sweep"
        assert done.message == "Completed: Token sweep"
        assert done.duration_ms is not None

    @pytest.mark.asyncio
    async def test_timed_reraises_and_logs_failure(self, tmp_path) -> None:
        sink = AgentLogger(log_dir=str(tmp_path))
        log = ComponentLogger(LogComponent.MAINTENANCE, sink)

        with pytest.raises(RuntimeError):
            async with log.timed("Token sweep"):
                raise RuntimeError("sweep broke")

        failed = sink.get_recent(level=LogLevel.ERROR)[0]
        assert failed.message == "Failed: Token sweep"
        assert failed.error_type == "RuntimeError"
