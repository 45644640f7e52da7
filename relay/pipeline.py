"""
Background processing of acknowledged WhatsApp webhook events.

Per event: extract -> generate reply -> record exchange -> send reply.
The webhook response has already been sent when this runs, so nothing here
can affect it. Each stage's failure is caught, logged and turned into a
StageOutcome; no exception leaves process().
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from relay.delivery import DeliverySender
from relay.errors import DeliveryError, RelayError
from relay.extractor import extract_message, extract_statuses
from relay.generator import ReplyGenerator
from relay.logging_utils import log_context
from relay.metrics import record_pipeline_event, record_stage_outcome
from relay.schemas import IncomingMessage, StageOutcome
from relay.storage import ExchangeRecorder

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """What happened to one event. Only observed through logs and tests."""
    result: str
    message: Optional[IncomingMessage] = None
    reply: Optional[str] = None
    outcomes: List[StageOutcome] = field(default_factory=list)

    def outcome(self, stage: str) -> Optional[StageOutcome]:
        for outcome in self.outcomes:
            if outcome.stage == stage:
                return outcome
        return None


class WebhookPipeline:
    def __init__(
        self,
        generator: ReplyGenerator,
        recorder: ExchangeRecorder,
        sender: DeliverySender,
        send_enabled: bool = False,
    ):
        self.generator = generator
        self.recorder = recorder
        self.sender = sender
        self.send_enabled = send_enabled

    async def process(self, payload: Any) -> PipelineResult:
        """
        Run one event through the pipeline.

        Args:
            payload: Decoded webhook body

        Returns:
            PipelineResult with the per-stage outcomes
        """
        try:
            result = await self._process(payload)
        except Exception:
            logger.exception("Unexpected error while processing webhook event")
            result = PipelineResult(result="error")

        record_pipeline_event(result.result)
        return result

    async def _process(self, payload: Any) -> PipelineResult:
        message = extract_message(payload)

        if message is None:
            statuses = extract_statuses(payload)
            if statuses:
                for status in statuses:
                    logger.info(
                        "Status callback received",
                        extra={"message_id": status.get("id"), "delivery_status": status.get("status")},
                    )
            else:
                logger.info("Webhook event without message, nothing to do")
            return PipelineResult(result="no_message")

        with log_context(message_id=message.message_id, message_type=message.type):
            return await self._process_message(message)

    async def _process_message(self, message: IncomingMessage) -> PipelineResult:
        if not message.is_text:
            logger.info("Ignoring non-text message")
            return PipelineResult(result="ignored", message=message)

        logger.info("Processing text message")
        pipeline_result = PipelineResult(result="replied", message=message)

        with log_context(stage="generate"):
            generated, reply = await self._generate(message)
        pipeline_result.outcomes.append(generated)
        if not generated.ok:
            pipeline_result.result = "generation_failed"
            return pipeline_result

        pipeline_result.reply = reply

        with log_context(stage="record"):
            recorded = await self._record(message, reply)
        pipeline_result.outcomes.append(recorded)

        with log_context(stage="send"):
            sent = await self._send(message, reply)
        pipeline_result.outcomes.append(sent)

        return pipeline_result

    async def _generate(self, message: IncomingMessage) -> Tuple[StageOutcome, Optional[str]]:
        reply = None
        try:
            reply = await self.generator.generate(message.text)
            outcome = StageOutcome(stage="generate", status="ok")
        except RelayError as e:
            outcome = StageOutcome(stage="generate", status="failed", error=str(e))
        except Exception as e:
            logger.exception("Unexpected error generating reply")
            outcome = StageOutcome(stage="generate", status="failed", error=str(e))

        self._log_outcome(outcome)
        return outcome, reply

    async def _record(self, message: IncomingMessage, reply: str) -> StageOutcome:
        try:
            outcome = await self.recorder.record(message, reply)
        except Exception as e:
            logger.exception("Unexpected error recording exchange")
            outcome = StageOutcome(stage="record", status="failed", error=str(e))

        self._log_outcome(outcome)
        return outcome

    async def _send(self, message: IncomingMessage, reply: str) -> StageOutcome:
        if not self.send_enabled:
            outcome = StageOutcome(stage="send", status="skipped", error="sending disabled")
            self._log_outcome(outcome)
            return outcome

        try:
            await self.sender.send_text(message.from_number, reply)
            outcome = StageOutcome(stage="send", status="ok")
        except DeliveryError as e:
            logger.error(
                "WhatsApp rejected reply",
                extra={"error_code": e.code, "error_subcode": e.subcode, "http_status": e.status_code},
            )
            outcome = StageOutcome(stage="send", status="failed", error=str(e))
        except RelayError as e:
            outcome = StageOutcome(stage="send", status="failed", error=str(e))
        except Exception as e:
            logger.exception("Unexpected error sending reply")
            outcome = StageOutcome(stage="send", status="failed", error=str(e))

        self._log_outcome(outcome)
        return outcome

    @staticmethod
    def _log_outcome(outcome: StageOutcome) -> None:
        record_stage_outcome(outcome.stage, outcome.status)
        extra = {"stage_status": outcome.status}
        if outcome.status == "failed":
            logger.error(f"Stage {outcome.stage} failed: {outcome.error}", extra=extra)
        else:
            logger.info(f"Stage {outcome.stage} {outcome.status}", extra=extra)
