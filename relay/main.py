import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from relay import __version__
from relay.config import Settings, get_settings
from relay.delivery import DeliverySender
from relay.errors import RelayError, ValidationError
from relay.extractor import extract_message
from relay.generator import ReplyGenerator
from relay.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from relay.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from relay.pipeline import WebhookPipeline
from relay.schemas import (
    AskResponse,
    ErrorResponse,
    HealthResponse,
    IncomingMessage,
    TestInsertResponse,
    WebhookResponse,
)
from relay.storage import (
    ExchangeRecorder,
    check_db_health,
    create_db_engine,
    create_session_factory,
    init_db,
)
from relay.utils import tokens_match, verify_hmac_signature


# Setup structured JSON logging
setup_logging(get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: build the clients once and share them through app.state
    - Shutdown: close HTTP clients and the database engine
    """
    settings = get_settings()

    engine = None
    session_factory = None
    if settings.persistence_enabled:
        engine = create_db_engine(settings.DATABASE_URL)
        init_db(engine)
        session_factory = create_session_factory(engine)
    else:
        logger.warning("DATABASE_URL not set, exchanges will not be persisted")

    if not settings.WHATSAPP_SEND_ENABLED:
        logger.info("WHATSAPP_SEND_ENABLED is off, replies will not be sent to WhatsApp")

    generator = ReplyGenerator(settings)
    sender = DeliverySender(settings)
    recorder = ExchangeRecorder(session_factory)

    app.state.generator = generator
    app.state.sender = sender
    app.state.recorder = recorder
    app.state.pipeline = WebhookPipeline(
        generator=generator,
        recorder=recorder,
        sender=sender,
        send_enabled=settings.WHATSAPP_SEND_ENABLED,
    )
    yield

    await sender.aclose()
    await generator.aclose()
    if engine is not None:
        engine.dispose()


app = FastAPI(
    title="WhatsApp Relay",
    description="Relays WhatsApp Cloud API messages to a chat-completion service and back",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_reply_generator(request: Request) -> ReplyGenerator:
    return request.app.state.generator


def get_exchange_recorder(request: Request) -> ExchangeRecorder:
    return request.app.state.recorder


def get_pipeline(request: Request) -> WebhookPipeline:
    return request.app.state.pipeline


# =============================================================================
# Liveness, Health & Diagnostics Routes
# =============================================================================

@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "WhatsApp + OpenAI relay is alive"


@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    settings: Settings = Depends(get_settings),
    recorder: ExchangeRecorder = Depends(get_exchange_recorder),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WHATSAPP_VERIFY_TOKEN is set (non-empty)
    2. When persistence is enabled, the DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WHATSAPP_VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WHATSAPP_VERIFY_TOKEN not configured"
        )

    if recorder.enabled and not check_db_health(recorder.session_factory):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


@app.get(
    "/test-insert",
    response_model=TestInsertResponse,
    responses={500: {"model": ErrorResponse, "description": "Store write failed"}},
)
async def test_insert(
    recorder: ExchangeRecorder = Depends(get_exchange_recorder),
):
    """
    Write a synthetic exchange to check that the store accepts upserts.
    """
    message = IncomingMessage(
        message_id=f"test-insert-{uuid.uuid4().hex}",
        from_number="0000000000",
        type="text",
        text="test insert",
        timestamp=str(int(time.time())),
    )

    try:
        await recorder.upsert(message, reply="test reply")
    except RelayError as e:
        logger.error(f"Test insert failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="failed to insert test row").model_dump(),
        )

    return TestInsertResponse(ok=True, message_id=message.message_id)


@app.get("/test", response_class=HTMLResponse, include_in_schema=False)
async def test_page() -> str:
    """Browser page for trying /ask without WhatsApp."""
    return TEST_PAGE


@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# WhatsApp Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
@app.get("/whatsapp/webhook", response_class=PlainTextResponse, include_in_schema=False)
async def verify_webhook(
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Subscription handshake performed by Meta when the webhook is registered.

    Echoes hub.challenge only when hub.mode is "subscribe" and
    hub.verify_token equals WHATSAPP_VERIFY_TOKEN.
    """
    if mode == "subscribe" and tokens_match(token, settings.WHATSAPP_VERIFY_TOKEN):
        logger.info("Webhook subscription verified")
        return PlainTextResponse(challenge or "", status_code=status.HTTP_200_OK)

    logger.warning(f"Webhook verification rejected: mode={mode}")
    return Response(status_code=status.HTTP_403_FORBIDDEN)


@app.post("/webhook", response_model=WebhookResponse)
@app.post("/whatsapp/webhook", response_model=WebhookResponse, include_in_schema=False)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    settings: Settings = Depends(get_settings),
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Receive WhatsApp Cloud API events.

    Always answers 200 straight away; Meta retries deliveries that are not
    acknowledged quickly. Processing runs as a background task after the
    response is sent and its outcome is only visible in logs and metrics.
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    if settings.WHATSAPP_APP_SECRET and not verify_hmac_signature(
        raw_body, x_hub_signature_256, settings.WHATSAPP_APP_SECRET
    ):
        logger.error("Invalid webhook signature, event dropped")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, result="invalid_signature")
        return WebhookResponse(status="ok")

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
        logger.error(f"Invalid JSON in webhook body, event dropped: {e}")
        record_webhook_outcome("invalid_json")
        log_webhook_data(request=request, result="invalid_json")
        return WebhookResponse(status="ok")

    message = extract_message(payload)
    record_webhook_outcome("accepted")
    log_webhook_data(
        request=request,
        message_id=message.message_id if message else None,
        result="accepted",
    )

    background_tasks.add_task(pipeline.process, payload)
    return WebhookResponse(status="ok")


# =============================================================================
# Direct Ask Route
# =============================================================================

def parse_ask_body(raw_body: bytes) -> str:
    """
    Extract the user message from a POST /ask body.

    Raises:
        ValidationError: Body is not a JSON object with a non-blank string "message"
    """
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
        raise ValidationError("body must be a JSON object")

    if not isinstance(body, dict):
        raise ValidationError("body must be a JSON object")

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("message must be a non-empty string")

    return message


@app.post(
    "/ask",
    response_model=AskResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or invalid message"},
        500: {"model": ErrorResponse, "description": "Completion service failed"},
    },
)
async def ask(
    request: Request,
    generator: ReplyGenerator = Depends(get_reply_generator),
):
    """
    Generate a reply for raw text, bypassing WhatsApp and the store.

    Body:
        - message: user text (required, non-empty string)
    """
    try:
        message = parse_ask_body(await request.body())
    except ValidationError as e:
        logger.warning(f"Invalid /ask body: {e}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(error=str(e)).model_dump(),
        )

    try:
        reply = await generator.generate(message)
    except RelayError as e:
        logger.error(f"/ask generation failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="failed to generate reply").model_dump(),
        )

    return AskResponse(reply=reply)


TEST_PAGE = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <title>Relay test</title>
    <style>
      body { font-family: Arial, sans-serif; max-width: 720px; margin: 40px auto; padding: 0 16px; }
      input { width: 100%; padding: 12px; font-size: 16px; }
      button { padding: 12px 16px; font-size: 16px; margin-top: 10px; }
      pre { background: #f4f4f4; padding: 12px; white-space: pre-wrap; }
    </style>
  </head>
  <body>
    <h2>Relay test (no WhatsApp)</h2>
    <input id="msg" placeholder="Type a question" />
    <button onclick="send()">Send</button>
    <pre id="out"></pre>
    <script>
      async function send() {
        const out = document.getElementById('out');
        out.textContent = '...';
        try {
          const resp = await fetch('/ask', {
            method: 'POST',
            headers: { 'Content-Type': 'application/json' },
            body: JSON.stringify({ message: document.getElementById('msg').value })
          });
          const data = await resp.json();
          out.textContent = data.reply || data.error || JSON.stringify(data, null, 2);
        } catch (e) {
          out.textContent = 'Error: ' + e.message;
        }
      }
    </script>
  </body>
</html>
"""


def run() -> None:
    """Console entry point: serve the app with uvicorn on HOST:PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
