import httpx
import pytest

from comicgen.core import factory
from comicgen.core import settings as settings_module
from comicgen.main import app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings_module.settings, "media_root", str(tmp_path / "media"))
    factory.reset_rate_limiter()
    yield
    factory.reset_rate_limiter()


@pytest.fixture()
async def client():
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

