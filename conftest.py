"""
Pytest configuration and shared fixtures.

Settings are built explicitly per test and injected through FastAPI
dependency overrides; the completion client is a fake, Graph API calls go to
an httpx.MockTransport and storage uses a throwaway SQLite file.
"""

import os
from types import SimpleNamespace

import httpx
import pytest

os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from relay.config import Settings, get_settings  # noqa: E402

get_settings.cache_clear()

from relay.delivery import DeliverySender  # noqa: E402
from relay.generator import ReplyGenerator  # noqa: E402
from relay.pipeline import WebhookPipeline  # noqa: E402
from relay.storage import ExchangeRecorder, create_db_engine, create_session_factory, init_db  # noqa: E402


TEST_VERIFY_TOKEN = "verify-me"

# Nesting far past the JSON decoder's recursion limit
DEEPLY_NESTED_JSON = "[" * 100000 + "]" * 100000


def make_settings(**overrides) -> Settings:
    """Build settings for a test without reading .env."""
    values = {
        "WHATSAPP_VERIFY_TOKEN": TEST_VERIFY_TOKEN,
        "WHATSAPP_APP_SECRET": None,
        "WHATSAPP_TOKEN": "wa-token",
        "WHATSAPP_PHONE_NUMBER_ID": "123456",
        "WHATSAPP_SEND_ENABLED": False,
        "OPENAI_API_KEY": "sk-test",
        "OPENAI_MODEL": "gpt-4.1-mini",
        "OPENAI_TEMPERATURE": 0.3,
        "DATABASE_URL": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# =============================================================================
# Completion service fake
# =============================================================================

class FakeCompletions:
    def __init__(self, content="Olá! Como posso ajudar?", error=None, choices=True):
        self.content = content
        self.error = error
        self.choices = choices
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if not self.choices:
            return SimpleNamespace(choices=[])
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))]
        )


class FakeOpenAIClient:
    def __init__(self, **kwargs):
        self.completions = FakeCompletions(**kwargs)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def calls(self):
        return self.completions.calls


# =============================================================================
# Graph API mock
# =============================================================================

class GraphAPIMock:
    """Records requests and answers with a canned response."""

    def __init__(self, status_code=200, json_body=None, text_body=None, error=None):
        self.status_code = status_code
        self.json_body = json_body if json_body is not None else {
            "messaging_product": "whatsapp",
            "contacts": [{"input": "5511999999999", "wa_id": "5511999999999"}],
            "messages": [{"id": "wamid.OUTBOUND"}],
        }
        self.text_body = text_body
        self.error = error
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.text_body is not None:
            return httpx.Response(self.status_code, text=self.text_body)
        return httpx.Response(self.status_code, json=self.json_body)

    def client(self, settings: Settings) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.GRAPH_API_BASE_URL,
            transport=httpx.MockTransport(self.handler),
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def openai_client() -> FakeOpenAIClient:
    return FakeOpenAIClient()


@pytest.fixture
def graph_api() -> GraphAPIMock:
    return GraphAPIMock()


@pytest.fixture
def session_factory(tmp_path):
    """SQLite store with schema applied, disposed after the test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'relay.db'}")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def recorder(session_factory) -> ExchangeRecorder:
    return ExchangeRecorder(session_factory)


@pytest.fixture
def build_pipeline(openai_client, graph_api, recorder):
    """Factory building a pipeline from settings with all fakes wired in."""

    def _build(settings: Settings, recorder_override: ExchangeRecorder = None) -> WebhookPipeline:
        return WebhookPipeline(
            generator=ReplyGenerator(settings, client=openai_client),
            recorder=recorder_override if recorder_override is not None else recorder,
            sender=DeliverySender(settings, client=graph_api.client(settings)),
            send_enabled=settings.WHATSAPP_SEND_ENABLED,
        )

    return _build


@pytest.fixture
def make_client(build_pipeline, recorder):
    """
    Factory returning a TestClient whose dependencies use the given settings.

    Dependency overrides are cleared when the test finishes.
    """
    from fastapi.testclient import TestClient

    from relay.main import app, get_exchange_recorder, get_pipeline, get_reply_generator

    clients = []

    def _make(settings: Settings = None, recorder_override: ExchangeRecorder = None) -> TestClient:
        settings = settings or make_settings()
        pipeline = build_pipeline(settings, recorder_override)

        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_pipeline] = lambda: pipeline
        app.dependency_overrides[get_reply_generator] = lambda: pipeline.generator
        app.dependency_overrides[get_exchange_recorder] = lambda: pipeline.recorder

        test_client = TestClient(app)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _make

    for test_client in clients:
        test_client.__exit__(None, None, None)
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_client):
    """Test client with default settings: send disabled, SQLite store."""
    return make_client()


# =============================================================================
# WhatsApp payloads
# =============================================================================

def whatsapp_event(messages=None, statuses=None) -> dict:
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": "123456"},
    }
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    }


def text_event(message_id="wamid.INBOUND1", sender="5511999999999", body="Oi, tudo bem?",
               timestamp="1700000000") -> dict:
    return whatsapp_event(messages=[{
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }])


def image_event(message_id="wamid.IMAGE1", sender="5511999999999") -> dict:
    return whatsapp_event(messages=[{
        "from": sender,
        "id": message_id,
        "timestamp": "1700000000",
        "type": "image",
        "image": {"id": "MEDIA_ID", "mime_type": "image/jpeg"},
    }])


def status_event(message_id="wamid.OUTBOUND", delivery_status="delivered") -> dict:
    return whatsapp_event(statuses=[{
        "id": message_id,
        "status": delivery_status,
        "timestamp": "1700000001",
        "recipient_id": "5511999999999",
    }])
