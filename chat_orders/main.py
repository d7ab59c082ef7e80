import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chat_orders.catalog import CatalogStore, ProductResolver
from chat_orders.config import Settings, configure_logging
from chat_orders.database import build_engine, build_session_factory, init_db
from chat_orders.errors import ClaimPendingError
from chat_orders.gateway import LoggingGateway, MessagingGateway, WhatsAppCloudGateway
from chat_orders.handlers import CommandHandler
from chat_orders.ingestion import IngestStatus, WebhookIngestionGate
from chat_orders.ledger import IdempotencyLedger
from chat_orders.messaging import EventPublisher
from chat_orders.orders import OrderTransactionManager
from chat_orders.queries import StatusQueryService
from chat_orders.replies import ReplyDispatcher
from chat_orders.schemas import WebhookPayload

logger = logging.getLogger(__name__)

SERVICE_NAME = "chat-order-service"


@dataclass
class Services:
    settings: Settings
    gate: WebhookIngestionGate
    gateway: MessagingGateway
    publisher: Optional[EventPublisher] = None
    engine: Optional[AsyncEngine] = None


def build_gate(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: MessagingGateway,
    publisher: Optional[EventPublisher] = None,
) -> WebhookIngestionGate:
    catalog = CatalogStore(session_factory)
    handler = CommandHandler(
        catalog=catalog,
        resolver=ProductResolver(catalog),
        orders=OrderTransactionManager(session_factory, catalog, publisher=publisher),
        status=StatusQueryService(session_factory),
    )
    return WebhookIngestionGate(
        ledger=IdempotencyLedger(session_factory, claim_ttl=settings.ledger_claim_ttl),
        handler=handler,
        dispatcher=ReplyDispatcher(gateway),
        wait_timeout=settings.ledger_wait_timeout,
    )


def build_gateway(settings: Settings) -> MessagingGateway:
    if settings.whatsapp_token:
        return WhatsAppCloudGateway(
            token=settings.whatsapp_token,
            default_phone_number_id=settings.phone_number_id,
            api_version=settings.graph_api_version,
        )
    logger.warning("WHATSAPP_TOKEN not set, replies will only be logged.")
    return LoggingGateway()


async def build_services(settings: Settings) -> Services:
    engine = build_engine(settings.database_url)
    await init_db(engine)
    session_factory = build_session_factory(engine)
    publisher = EventPublisher(settings.rabbitmq_url)
    await publisher.connect()
    gateway = build_gateway(settings)
    return Services(
        settings=settings,
        gate=build_gate(settings, session_factory, gateway, publisher),
        gateway=gateway,
        publisher=publisher,
        engine=engine,
    )


async def close_services(services: Services) -> None:
    if services.publisher is not None:
        await services.publisher.close()
    await services.gateway.aclose()
    if services.engine is not None:
        await services.engine.dispose()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        built = await build_services(settings)
        app.state.services = built
        try:
            yield
        finally:
            await close_services(built)

    app = FastAPI(title="Chat Order Service", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "🚀 WhatsApp order backend is running!"

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/webhook", response_class=PlainTextResponse)
    async def verify_webhook(
        mode: Optional[str] = Query(None, alias="hub.mode"),
        token: Optional[str] = Query(None, alias="hub.verify_token"),
        challenge: Optional[str] = Query(None, alias="hub.challenge"),
    ):
        if mode == "subscribe" and settings.verify_token and token == settings.verify_token:
            logger.info("Webhook verified")
            return challenge or ""
        logger.warning("Webhook verification rejected (mode=%s)", mode)
        raise HTTPException(status_code=403, detail="Verification failed")

    @app.post("/webhook")
    async def receive_webhook(payload: WebhookPayload, request: Request):
        delivery = payload.first_delivery()
        if delivery is None:
            return {"status": "ignored"}

        gate: WebhookIngestionGate = request.app.state.services.gate
        timeout = request.app.state.services.settings.processing_timeout
        try:
            result = await asyncio.wait_for(gate.ingest(delivery), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Message %s not processed within %.1fs", delivery.message_id, timeout)
            return JSONResponse({"status": "timeout"}, status_code=503)
        except ClaimPendingError:
            logger.warning("Message %s still claimed by another delivery", delivery.message_id)
            return JSONResponse({"status": "pending"}, status_code=503)
        except Exception:
            logger.exception("Message %s escalated", delivery.message_id)
            return JSONResponse({"status": "error"}, status_code=500)

        status = "accepted" if result.status == IngestStatus.ACCEPTED else "duplicate"
        return {"status": status, "message_id": result.message_id, "outcome": result.outcome}

    return app


if __name__ == "__main__":
    uvicorn.run("chat_orders.main:create_app", factory=True, host="0.0.0.0", port=8000)
