"""
Tests for job execution: lifecycle transitions, result and error recording,
cancellation and late results.
"""

import asyncio
import pytest
from unittest.mock import patch

from app.jobs.errors import JobCancelledError, JobNotFoundError, JobProcessingError
from app.jobs.job_manager import CANCELLATION_MESSAGE
from app.jobs.job_types import JobType
from app.jobs.runner import LATE_RESULT_MESSAGE, JobRunner


def _messages(row):
    return [entry["message"] for entry in row["logs"]]


@pytest.fixture
def run_job(manager, make_registry):
    """Create a PENDING job and run it with the given processor."""
    def _run(processor, job_type=JobType.ANALYZE, config=None):
        runner = JobRunner(manager, make_registry({job_type: processor}))
        job = manager.create_job(job_type, config=config or {})
        completed = asyncio.run(runner.run(job["id"]))
        return job["id"], completed
    return _run


class TestSuccessfulRun:
    """Processors that return a result."""

    def test_completed_job_stores_result(self, run_job, fake_db):
        async def processor(ctx):
            ctx.info("working")
            return {"analysis": "fine", "count": 3}

        job_id, completed = run_job(processor)

        assert completed is True
        row = fake_db.row("jobs", job_id)
        assert row["status"] == "COMPLETED"
        assert row["result"] == {"analysis": "fine", "count": 3}
        assert row["error"] is None
        assert row["progress"] == 100
        assert row["started_at"] and row["completed_at"]

        messages = _messages(row)
        assert messages[0] == "Job started (ANALYZE)"
        assert "working" in messages
        assert messages[-1].startswith("Job completed in")

    def test_none_result_becomes_empty_object(self, run_job, fake_db):
        async def processor(ctx):
            return None

        job_id, completed = run_job(processor)

        assert completed is True
        assert fake_db.row("jobs", job_id)["result"] == {}

    def test_sync_processor_runs_in_executor(self, run_job, fake_db):
        def processor(ctx):
            ctx.info("sync work")
            return {"sync": True}

        job_id, completed = run_job(processor)

        assert completed is True
        assert fake_db.row("jobs", job_id)["result"] == {"sync": True}

    def test_processor_sees_config(self, run_job, fake_db):
        seen = {}

        async def processor(ctx):
            seen.update(ctx.config)
            return {}

        run_job(processor, config={"prompt": "hello"})
        assert seen == {"prompt": "hello"}

    def test_log_timestamps_are_ordered(self, run_job, fake_db):
        async def processor(ctx):
            for i in range(5):
                ctx.debug(f"step {i}")
            return {}

        job_id, _ = run_job(processor)

        timestamps = [entry["timestamp"] for entry in fake_db.row("jobs", job_id)["logs"]]
        assert timestamps == sorted(timestamps)

    def test_progress_and_log_write_failures_do_not_fail_job(self, manager, make_registry, fake_db):
        async def processor(ctx):
            ctx.update_progress(50, "halfway")
            ctx.info("still going")
            return {"done": True}

        runner = JobRunner(manager, make_registry({JobType.ANALYZE: processor}))
        job = manager.create_job(JobType.ANALYZE)

        with patch.object(manager, "write_logs", side_effect=RuntimeError("log store down")), \
                patch.object(manager, "update_progress", side_effect=RuntimeError("progress down")):
            completed = asyncio.run(runner.run(job["id"]))

        assert completed is True
        assert fake_db.row("jobs", job["id"])["status"] == "COMPLETED"

    def test_result_write_failure_marks_job_failed(self, manager, make_registry, fake_db):
        async def processor(ctx):
            return {"done": True}

        runner = JobRunner(manager, make_registry({JobType.ANALYZE: processor}))
        job = manager.create_job(JobType.ANALYZE)

        with patch.object(manager, "mark_completed", side_effect=RuntimeError("store down")):
            completed = asyncio.run(runner.run(job["id"]))

        assert completed is False
        row = fake_db.row("jobs", job["id"])
        assert row["status"] == "FAILED"
        assert row["error"] == "Failed to record job result: store down"
        messages = _messages(row)
        assert not any(m.startswith("Job completed") for m in messages)
        assert row["logs"][-1]["level"] == "error"

    def test_run_safely_survives_failed_error_write(self, manager, make_registry, fake_db):
        async def processor(ctx):
            return {}

        runner = JobRunner(manager, make_registry({JobType.ANALYZE: processor}))
        job = manager.create_job(JobType.ANALYZE)

        with patch.object(manager, "mark_completed", side_effect=RuntimeError("store down")), \
                patch.object(manager, "mark_failed", side_effect=RuntimeError("still down")):
            assert asyncio.run(runner.run_safely(job["id"])) is False

        assert fake_db.row("jobs", job["id"])["status"] == "PROCESSING"


class TestFailedRun:
    """Processors that raise."""

    def test_exception_marks_job_failed(self, run_job, fake_db):
        async def processor(ctx):
            raise ValueError("bad input")

        job_id, completed = run_job(processor)

        assert completed is False
        row = fake_db.row("jobs", job_id)
        assert row["status"] == "FAILED"
        assert row["error"] == "bad input"
        assert row["result"] is None
        assert row["completed_at"]
        assert row["logs"][-1] == {
            "timestamp": row["logs"][-1]["timestamp"],
            "level": "error",
            "message": "Job failed: bad input",
        }

    def test_typed_processing_error(self, run_job, fake_db):
        async def processor(ctx):
            raise JobProcessingError("Block b-1 not found")

        job_id, _ = run_job(processor)
        assert fake_db.row("jobs", job_id)["error"] == "Block b-1 not found"

    def test_exception_without_message_uses_type_name(self, run_job, fake_db):
        async def processor(ctx):
            raise KeyError()

        job_id, _ = run_job(processor)
        assert fake_db.row("jobs", job_id)["error"] == "KeyError"

    def test_unknown_job_type_fails_with_registered_types(self, manager, make_registry, fake_db):
        async def processor(ctx):
            return {}

        runner = JobRunner(manager, make_registry({
            JobType.ANALYZE: processor,
            JobType.GENERATE: processor,
        }))
        job = manager.create_job(JobType.ANALYZE)
        fake_db.tables["jobs"][0]["type"] = "REPORT_GENERATION"

        completed = asyncio.run(runner.run(job["id"]))

        assert completed is False
        row = fake_db.row("jobs", job["id"])
        assert row["status"] == "FAILED"
        assert row["error"] == "Unknown job type: REPORT_GENERATION. Registered types: ANALYZE, GENERATE"


class TestRunPreconditions:
    """Jobs that are missing or not PENDING."""

    def test_missing_job_raises(self, manager, full_registry):
        runner = JobRunner(manager, full_registry)
        with pytest.raises(JobNotFoundError):
            asyncio.run(runner.run("missing"))

    def test_run_safely_swallows_missing_job(self, manager, full_registry):
        runner = JobRunner(manager, full_registry)
        assert asyncio.run(runner.run_safely("missing")) is False

    def test_second_run_is_a_no_op(self, manager, make_registry, fake_db):
        calls = []

        async def processor(ctx):
            calls.append(ctx.job_id)
            return {"n": len(calls)}

        runner = JobRunner(manager, make_registry({JobType.ANALYZE: processor}))
        job = manager.create_job(JobType.ANALYZE)

        assert asyncio.run(runner.run(job["id"])) is True
        assert asyncio.run(runner.run(job["id"])) is False

        assert calls == [job["id"]]
        assert fake_db.row("jobs", job["id"])["result"] == {"n": 1}

    def test_cancelled_before_start_never_runs(self, manager, make_registry, fake_db):
        calls = []

        async def processor(ctx):
            calls.append(ctx.job_id)
            return {}

        runner = JobRunner(manager, make_registry({JobType.ANALYZE: processor}))
        job = manager.create_job(JobType.ANALYZE)
        manager.cancel_job(job["id"])

        assert asyncio.run(runner.run(job["id"])) is False
        assert calls == []
        row = fake_db.row("jobs", job["id"])
        assert row["status"] == "CANCELLED"
        assert row["started_at"] is None


class TestCancellationDuringRun:
    """Cancellation racing a running processor."""

    def test_late_result_is_discarded(self, manager, run_job, fake_db):
        async def processor(ctx):
            manager.cancel_job(ctx.job_id)
            return {"late": True}

        job_id, completed = run_job(processor)

        assert completed is False
        row = fake_db.row("jobs", job_id)
        assert row["status"] == "CANCELLED"
        assert row["result"] is None
        assert row["error"] == CANCELLATION_MESSAGE
        assert row["logs"][-1]["level"] == "warn"
        assert row["logs"][-1]["message"] == LATE_RESULT_MESSAGE
        assert not any(m.startswith("Job completed") for m in _messages(row))

    def test_late_failure_keeps_cancelled_status(self, manager, run_job, fake_db):
        async def processor(ctx):
            manager.cancel_job(ctx.job_id)
            raise RuntimeError("crashed after cancel")

        job_id, _ = run_job(processor)

        row = fake_db.row("jobs", job_id)
        assert row["status"] == "CANCELLED"
        assert row["error"] == CANCELLATION_MESSAGE
        assert LATE_RESULT_MESSAGE in _messages(row)

    def test_processor_stops_on_cancellation(self, manager, run_job, fake_db):
        steps = []

        async def processor(ctx):
            for i in range(3):
                if i == 1:
                    manager.cancel_job(ctx.job_id)
                ctx.raise_if_cancelled()
                steps.append(i)
            return {"steps": steps}

        job_id, completed = run_job(processor)

        assert completed is False
        assert steps == [0]
        row = fake_db.row("jobs", job_id)
        assert row["status"] == "CANCELLED"
        assert "Processing stopped: job was cancelled" in _messages(row)

    def test_cancelled_error_without_cancellation_fails_job(self, run_job, fake_db):
        async def processor(ctx):
            raise JobCancelledError(ctx.job_id)

        job_id, _ = run_job(processor)

        row = fake_db.row("jobs", job_id)
        assert row["status"] == "FAILED"
        assert row["error"] == f"Job {job_id} was cancelled"

    def test_check_cancelled(self, make_context, manager):
        ctx = make_context(JobType.ANALYZE)
        assert ctx.check_cancelled() is False

        manager.cancel_job(ctx.job_id)
        assert ctx.check_cancelled() is True
        with pytest.raises(JobCancelledError):
            ctx.raise_if_cancelled()


class TestPendingSweep:
    """Running PENDING jobs left behind."""

    def test_process_pending_jobs(self, manager, make_registry, fake_db):
        async def processor(ctx):
            if ctx.config.get("fail"):
                raise RuntimeError("nope")
            return {}

        runner = JobRunner(manager, make_registry({JobType.ANALYZE: processor}))
        ok = manager.create_job(JobType.ANALYZE)
        bad = manager.create_job(JobType.ANALYZE, config={"fail": True})

        assert asyncio.run(runner.process_pending_jobs()) == 1
        assert fake_db.row("jobs", ok["id"])["status"] == "COMPLETED"
        assert fake_db.row("jobs", bad["id"])["status"] == "FAILED"
        assert manager.find_pending_jobs() == []
