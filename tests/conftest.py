import pytest
from httpx import AsyncClient, ASGITransport
from typing import AsyncGenerator

from threadgenie.main import app
from threadgenie.api.dependencies import get_generative_client
from threadgenie.core.exceptions import circuit_breakers
from tests.factories import FakeGenerativeClient, make_image_bytes


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    for breaker in circuit_breakers.values():
        breaker.reset()
    yield
    for breaker in circuit_breakers.values():
        breaker.reset()


@pytest.fixture
def upload_bytes() -> bytes:
    return make_image_bytes(size=(2000, 1000), fmt="JPEG")


@pytest.fixture
def fake_client() -> FakeGenerativeClient:
    return FakeGenerativeClient()


@pytest.fixture
async def client(fake_client) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_generative_client] = lambda: fake_client
    try:
        # Trigger lifespan events (startup/shutdown)
        async with app.router.lifespan_context(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                yield ac
    finally:
        app.dependency_overrides.clear()
