import os
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pixiv_crawler.credentials import CredentialPool, CredentialProfile
from pixiv_crawler.pixiv_client import PixivClient
from pixiv_crawler.storage.database import close_database, init_database
from pixiv_crawler.utils.config_loader import Config
from pixiv_crawler.utils.env_loader import load_environment


@pytest.fixture(autouse=True)
def load_dotenv_defaults(monkeypatch):
    """Ensure every test starts from the same environment."""

    # Clear settings so tests only see values they set themselves.
    for key in [
        "DATABASE_URL",
        "PIXIV_COOKIE",
        "PIXIV_USER_AGENT",
        "PIXIV_REFERER",
        "PIXIV_ACCEPT_LANGUAGE",
        "PIXIV_CRAWLER_CONFIG",
        "PIXIV_CRAWLER_ENV_FILE",
        "CREDENTIAL_PROFILES",
        "WORKER_ENDPOINTS",
        "PRIMARY_ENDPOINT",
        "POPULARITY_THRESHOLD",
        "NODE_ID",
    ]:
        monkeypatch.delenv(key, raising=False)

    load_environment(override=True)

    yield

    # Clean up to avoid leaking state between tests.
    for key in list(os.environ.keys()):
        if key.startswith("TEST_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db():
    await init_database("sqlite://:memory:")
    yield
    await close_database()


@pytest.fixture
def config():
    return Config(
        credential_profiles=[
            CredentialProfile(cookie="PHPSESSID=first"),
            CredentialProfile(cookie="PHPSESSID=second"),
        ],
        request_delay_min_ms=0,
        request_delay_max_ms=0,
        worker_endpoints=["http://w0.test", "http://w1.test"],
        detail_info_round_delay=0,
    )


@pytest.fixture
def pool(config):
    return CredentialPool(config.credential_profiles)


@pytest.fixture
def make_client(pool):
    """Build a PixivClient whose requests are answered by ``handler``."""

    def factory(handler):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return PixivClient(pool, delay_range_ms=(0, 0), client=http)

    return factory


def pixiv_json(body, error=False, message=""):
    return httpx.Response(200, json={"error": error, "message": message, "body": body})


def detail_body(user_id="100", like=2000, bookmark=1000, view=5000, tags=()):
    return {
        "illustId": None,
        "userId": user_id,
        "likeCount": like,
        "bookmarkCount": bookmark,
        "viewCount": view,
        "tags": {"tags": [{"tag": tag} for tag in tags]},
    }
