"""
Shared fixtures for the job service tests.

The real Supabase and Gemini clients are disabled; every test runs against an
in-memory FakeSupabase injected into JobManager.
"""

import os
import pytest

# Set test environment before the app modules read it
os.environ["ENVIRONMENT"] = "test"
os.environ["SUPABASE_URL"] = ""
os.environ["NEXT_PUBLIC_SUPABASE_URL"] = ""
os.environ["GOOGLE_CLOUD_API_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""
os.environ["GOOGLE_API_KEY"] = ""

from fake_supabase import FakeSupabase
from app.jobs.job_manager import JobManager
from app.jobs.job_types import JobType
from app.jobs.registry import ProcessorRegistry
from app.jobs.runner import JobContext


async def noop_processor(ctx):
    return {"ok": True}


@pytest.fixture
def fake_db():
    """Empty in-memory store."""
    return FakeSupabase()


@pytest.fixture
def manager(fake_db):
    return JobManager(supabase=fake_db)


@pytest.fixture
def full_registry():
    """Frozen registry with a no-op processor for every job type."""
    registry = ProcessorRegistry()
    for job_type in JobType:
        registry.register(job_type, noop_processor)
    return registry.freeze()


@pytest.fixture
def make_registry():
    """Build a frozen registry from {JobType: processor}."""
    def _make(processors):
        registry = ProcessorRegistry()
        for job_type, processor in processors.items():
            registry.register(job_type, processor)
        return registry.freeze()
    return _make


@pytest.fixture
def make_context(manager):
    """Create a PROCESSING job and return the JobContext a processor would get."""
    def _make(job_type, config=None, document_id=None, block_id=None):
        job = manager.create_job(
            job_type,
            config=config or {},
            document_id=document_id,
            block_id=block_id,
        )
        manager.mark_processing(job["id"])
        return JobContext(
            job_id=job["id"],
            job_type=job_type.value,
            config=config or {},
            document_id=document_id,
            block_id=block_id,
            _manager=manager,
        )
    return _make
