import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from packages.common.resilience import RetryConfig
from services.assessment.repo import AssessmentRepo
from services.assessment.service import AssessmentService
from services.assessment.tests.helpers import Clock


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def events() -> list:
    """Attempts delivered to the graded-attempt sink."""
    return []


@pytest_asyncio.fixture
async def repo(tmp_path):
    r = AssessmentRepo(create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assessment.db'}"))
    await r.init_db()
    yield r
    await r.dispose()


@pytest.fixture
def service(repo, clock, events) -> AssessmentService:
    return AssessmentService(repo, clock=clock, retry=RetryConfig(attempts=3, base_delay=0.0),
                             event_sink=events.append)
