"""Webhook Ingestion Gate.

Every inbound delivery passes through ``WebhookIngestionGate.ingest``. The
provider delivers at least once, so a message id is processed by exactly
one delivery; later (or concurrent) duplicates get the cached reply back
instead of running the command again.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from chat_orders.errors import ClaimPendingError, DuplicateDeliveryError
from chat_orders.handlers import CommandHandler, Outcome
from chat_orders.ledger import IdempotencyLedger
from chat_orders.models import ProcessedMessage
from chat_orders.replies import ReplyDispatcher
from chat_orders.schemas import InboundDelivery

logger = logging.getLogger(__name__)

# Claims attempted when the holder of a claim releases it.
CLAIM_ATTEMPTS = 2


class IngestStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE_SKIPPED = "duplicate_skipped"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    message_id: str
    outcome: Optional[str] = None
    reply: Optional[str] = None


class WebhookIngestionGate:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        handler: CommandHandler,
        dispatcher: ReplyDispatcher,
        wait_timeout: float = 5.0,
    ):
        self._ledger = ledger
        self._handler = handler
        self._dispatcher = dispatcher
        self._wait_timeout = wait_timeout

    async def ingest(self, delivery: InboundDelivery) -> IngestResult:
        message_id = delivery.message_id

        # 1. Fast path for redeliveries of finished messages
        existing = await self._ledger.lookup(message_id)
        if existing is not None and existing.completed:
            return self._duplicate(message_id, existing)

        # 2. Atomic claim, losers wait for the winner's reply
        for _ in range(CLAIM_ATTEMPTS):
            try:
                await self._ledger.claim(message_id, delivery.sender)
            except DuplicateDeliveryError as dup:
                result = await self._await_winner(delivery, dup.record)
                if result is None:
                    logger.info("Claim on message %s was released, claiming again", message_id)
                    continue
                return result
            return await self._process(delivery)
        raise ClaimPendingError(message_id)

    async def _process(self, delivery: InboundDelivery) -> IngestResult:
        message_id = delivery.message_id

        # 3. Process and record the outcome before replying
        try:
            outcome = await self._handler.handle(delivery)
            # An order may already be committed: completion outlives a cancelled caller
            completed = await asyncio.shield(
                self._ledger.complete(message_id, outcome.kind, outcome.reply)
            )
        except DuplicateDeliveryError as dup:
            logger.warning("Claim on message %s was lost while processing", message_id)
            result = await self._await_winner(delivery, dup.record)
            if result is None:
                raise ClaimPendingError(message_id) from dup
            return result
        except BaseException:
            logger.error("Processing of message %s aborted, releasing claim", message_id)
            await self._release(message_id)
            raise

        if not completed:
            return self._duplicate(message_id, await self._ledger.lookup(message_id))

        logger.info("Message %s from %s processed: %s", message_id, delivery.sender, outcome.kind)

        # 4. Reply once
        return await self._reply(delivery, outcome)

    async def _await_winner(
        self, delivery: InboundDelivery, record: Optional[ProcessedMessage]
    ) -> Optional[IngestResult]:
        """Outcome of a delivery that lost the claim.

        Returns None when the claim vanished and the caller may claim again.
        """
        message_id = delivery.message_id
        if record is None or not record.completed:
            record = await self._ledger.wait_for_completion(message_id, self._wait_timeout)
        if record is None:
            return None
        if record.completed:
            return self._duplicate(message_id, record)
        if record.order_id is not None:
            return await self._recover(delivery, record.order_id)
        raise ClaimPendingError(message_id)

    async def _recover(self, delivery: InboundDelivery, order_id: str) -> IngestResult:
        """Finish a message whose order committed but whose claim never completed."""
        message_id = delivery.message_id
        outcome = await self._handler.recover_order(order_id)
        completed = await asyncio.shield(
            self._ledger.complete(message_id, outcome.kind, outcome.reply)
        )
        if not completed:
            return self._duplicate(message_id, await self._ledger.lookup(message_id))
        logger.warning("Message %s recovered from committed order %s", message_id, order_id)
        return await self._reply(delivery, outcome)

    async def _reply(self, delivery: InboundDelivery, outcome: Outcome) -> IngestResult:
        await self._dispatcher.reply(
            delivery.sender,
            outcome.reply,
            dedupe_key=delivery.message_id,
            phone_number_id=delivery.phone_number_id,
        )
        return IngestResult(IngestStatus.ACCEPTED, delivery.message_id, outcome.kind, outcome.reply)

    async def _release(self, message_id: str) -> None:
        try:
            await self._ledger.release(message_id)
        except Exception:
            logger.exception("Could not release claim for message %s", message_id)

    def _duplicate(self, message_id: str, record: Optional[ProcessedMessage]) -> IngestResult:
        logger.info("Duplicate delivery of message %s skipped", message_id)
        if record is None:
            return IngestResult(IngestStatus.DUPLICATE_SKIPPED, message_id)
        return IngestResult(
            IngestStatus.DUPLICATE_SKIPPED, message_id, record.outcome, record.reply
        )
