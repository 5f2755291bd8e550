"""
Pilot - Test Configuration and Fixtures
"""
import json
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import httpx
import pytest
from httpx import AsyncClient, ASGITransport
from unittest.mock import AsyncMock

# Set testing environment before settings are imported
os.environ.setdefault('ENVIRONMENT', 'testing')
os.environ.setdefault('SESSION_CLEANUP_ENABLED', 'false')

from pilot.core.config import settings
from pilot.main import create_app
from pilot.modules.build.build_detector import BuildDetector
from pilot.modules.injection.direct_injection import DirectPickerInjection
from pilot.modules.orchestrator.readiness import ReadinessProbe
from pilot.modules.orchestrator.session_setup import SessionSetupOrchestrator
from pilot.modules.sandbox.port_allocator import PortAllocator
from pilot.services.progress_store import ProgressStore
from pilot.services.service_container import ServiceContainer, create_services
from pilot.services.session_store import SessionStore

from mocks.fake_sandbox import FakeContainerManager

REPO_URL = 'https://github.com/acme/storefront'

NEXT_PACKAGE_JSON = json.dumps({
    'name': 'storefront',
    'scripts': {'dev': 'next dev', 'build': 'next build', 'start': 'next start'},
    'dependencies': {'next': '14.1.0', 'react': '18.2.0', 'react-dom': '18.2.0'},
})

NEXT_APP_LAYOUT = (
    "export default function RootLayout({ children }) {\n"
    "  return (\n"
    "    <html lang=\"en\">\n"
    "      <head>\n"
    "        <title>Storefront</title>\n"
    "      </head>\n"
    "      <body>{children}</body>\n"
    "    </html>\n"
    "  );\n"
    "}\n"
)


class FakeClock:
    """Manually advanced clock returning aware datetimes"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Manually advanced monotonic clock"""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ok_probe(attempts: int = 3) -> ReadinessProbe:
    """Probe whose transport always answers 200"""
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text='ok'))
    return ReadinessProbe(attempts=attempts, interval=0, sleep=AsyncMock(), transport=transport)


def refused_probe(attempts: int = 3) -> ReadinessProbe:
    """Probe whose transport always refuses the connection"""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('Connection refused', request=request)

    return ReadinessProbe(attempts=attempts, interval=0, sleep=AsyncMock(),
                          transport=httpx.MockTransport(handler))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def next_repo_files() -> dict:
    return {'package.json': NEXT_PACKAGE_JSON, 'app/layout.tsx': NEXT_APP_LAYOUT}


@pytest.fixture
def fake_manager(next_repo_files) -> FakeContainerManager:
    return FakeContainerManager(repo_files=next_repo_files)


@pytest.fixture
def session_store(clock) -> SessionStore:
    return SessionStore(clock=clock)


@pytest.fixture
def progress_store(monotonic) -> ProgressStore:
    return ProgressStore(clock=monotonic)


def build_orchestrator(manager: FakeContainerManager,
                       session_store: SessionStore,
                       progress_store: ProgressStore,
                       probe: ReadinessProbe) -> SessionSetupOrchestrator:
    return SessionSetupOrchestrator(
        session_store=session_store,
        progress_store=progress_store,
        container_manager=manager,
        port_allocator=PortAllocator(session_store),
        build_detector=BuildDetector(manager),
        injector=DirectPickerInjection(manager),
        readiness_probe=probe,
        preview_host='localhost',
    )


@pytest.fixture
def orchestrator(fake_manager, session_store, progress_store) -> SessionSetupOrchestrator:
    return build_orchestrator(fake_manager, session_store, progress_store, ok_probe())


@pytest.fixture
def services(fake_manager) -> ServiceContainer:
    return create_services(container_manager=fake_manager, readiness_probe=ok_probe())


@pytest.fixture
async def client(services: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app over the fake sandbox runtime"""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac


@pytest.fixture
def api_prefix() -> str:
    return f'/api/{settings.API_VERSION}'
