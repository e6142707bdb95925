from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from fake_platform import FakePlatform
from platform_server import PlatformServer
from scene_job_client.models import Polling

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest.fixture
def polling() -> Polling:
    """Fast polling so tests never wait on real intervals."""
    return Polling(interval_ms=0, max_attempts=10, request_timeout_ms=1000)


@pytest.fixture
def fake() -> FakePlatform:
    return FakePlatform()


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[Tuple[PlatformServer, str], None]:
    """Start and yield a mock platform server with its base URL."""
    port = unused_tcp_port_factory()
    server_instance = PlatformServer(completion_polls=2, ready_polls=2)
    await server_instance.start(port=port)
    try:
        yield server_instance, BASE_URL_TEMPLATE.format(port)
    finally:
        await server_instance.stop()
