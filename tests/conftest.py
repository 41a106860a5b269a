"""Shared fixtures for story-relay tests."""
import pytest
import respx

from auth import AuthManager
from config import Settings
from services import AnalysisClient, ChatClient, ImageClient, MusicClient

TEST_SECRET = "story-relay-test-secret-0123456789abcdef"
ANALYSIS_URL = "http://analysis.test"
IMAGE_URL = "http://image.test"
RAG_URL = "http://rag.test"
MUSIC_URL = "http://music.test"


def make_settings(**overrides) -> Settings:
    values = {
        "DEBUG": False,
        "JWT_SECRET": TEST_SECRET,
        "ANALYSIS_AI_URL": ANALYSIS_URL,
        "IMAGE_AI_URL": IMAGE_URL,
        "RAG_AI_URL": RAG_URL,
        "MUSIC_AI_URL": MUSIC_URL,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# Every timeout tiny but still ordered probe < index < analysis < generation
FAST_TIMEOUTS = {
    "CONNECT_TIMEOUT": 1.0,
    "PROBE_TIMEOUT": 0.05,
    "INDEX_TIMEOUT": 0.1,
    "CHAT_TIMEOUT": 0.1,
    "IMAGE_TIMEOUT": 0.1,
    "MUSIC_TIMEOUT": 0.1,
    "ANALYSIS_TIMEOUT": 0.15,
    "SUBTREE_TIMEOUT": 0.2,
    "GENERATION_TIMEOUT": 0.2,
}


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def descriptors(settings):
    return settings.descriptors()


@pytest.fixture
def auth_manager(settings):
    return AuthManager(settings.JWT_SECRET, required_role=settings.JWT_REQUIRED_ROLE,
                       trust_token_roles=settings.JWT_TRUST_TOKEN_ROLES)


@pytest.fixture
def downstream():
    """Mock router for the AI servers; unmatched requests fail loudly."""
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest.fixture
async def analysis_client(descriptors):
    client = AnalysisClient(descriptors["Analysis"])
    yield client
    await client.close()


@pytest.fixture
async def image_client(descriptors):
    client = ImageClient(descriptors["Image"])
    yield client
    await client.close()


@pytest.fixture
async def chat_client(descriptors):
    client = ChatClient(descriptors["Chat"])
    yield client
    await client.close()


@pytest.fixture
async def music_client(descriptors):
    client = MusicClient(descriptors["Music"])
    yield client
    await client.close()
