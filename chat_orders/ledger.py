"""Idempotency Ledger: one row per inbound message id.

A delivery first *claims* its message id by inserting an in-flight row; the
primary key makes that check-then-insert atomic across concurrent
redeliveries. Once the pipeline finishes, the claim is *completed* with the
outcome and the reply text, which later duplicates replay.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_orders.errors import DuplicateDeliveryError
from chat_orders.models import ProcessedMessage, utcnow

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        claim_ttl: float = 60.0,
        poll_interval: float = 0.1,
    ):
        self._session_factory = session_factory
        self._claim_ttl = claim_ttl
        self._poll_interval = poll_interval

    async def lookup(self, message_id: str) -> Optional[ProcessedMessage]:
        async with self._session_factory() as session:
            return await session.get(ProcessedMessage, message_id)

    async def claim(self, message_id: str, customer_reference: Optional[str] = None) -> None:
        """Insert the in-flight row for ``message_id``.

        Raises ``DuplicateDeliveryError`` when another delivery holds the
        claim (or already completed it).
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        ProcessedMessage(
                            message_id=message_id,
                            customer_reference=customer_reference,
                            claimed_at=utcnow(),
                        )
                    )
            return
        except IntegrityError:
            pass

        existing = await self.lookup(message_id)
        if existing is not None and not existing.completed and await self._take_over_stale(message_id):
            logger.warning("Took over stale claim for message %s", message_id)
            return
        raise DuplicateDeliveryError(message_id, record=existing)

    async def _take_over_stale(self, message_id: str) -> bool:
        cutoff = utcnow() - timedelta(seconds=self._claim_ttl)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(ProcessedMessage)
                    .where(
                        ProcessedMessage.message_id == message_id,
                        ProcessedMessage.processed_at.is_(None),
                        ProcessedMessage.claimed_at < cutoff,
                        ProcessedMessage.order_id.is_(None),
                    )
                    .values(claimed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def complete(self, message_id: str, outcome: str, reply: Optional[str]) -> bool:
        """Record the outcome of an in-flight claim.

        Returns False when the message was already completed (or its claim is
        gone), in which case the caller must not reply again.
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(ProcessedMessage)
                    .where(
                        ProcessedMessage.message_id == message_id,
                        ProcessedMessage.processed_at.is_(None),
                    )
                    .values(processed_at=utcnow(), outcome=outcome, reply=reply)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def release(self, message_id: str) -> None:
        """Drop an unfinished claim so a redelivery can process the message.

        A claim that already has an order attached is kept: the order is
        committed, and a redelivery recovers its reply instead.
        """
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(ProcessedMessage)
                    .where(
                        ProcessedMessage.message_id == message_id,
                        ProcessedMessage.processed_at.is_(None),
                        ProcessedMessage.order_id.is_(None),
                    )
                    .execution_options(synchronize_session=False)
                )

    async def wait_for_completion(self, message_id: str, timeout: float) -> Optional[ProcessedMessage]:
        """Poll until the claim holder completes ``message_id``.

        Returns the completed record, the still in-flight record once ``timeout``
        elapses, or None if the claim disappears (it was released).
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            record = await self.lookup(message_id)
            if record is None:
                return None
            if record.completed:
                return record
            if loop.time() >= deadline:
                logger.warning("Timed out waiting for message %s to complete", message_id)
                return record
            await asyncio.sleep(self._poll_interval)
