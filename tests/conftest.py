from decimal import Decimal

import pytest

from chat_orders.catalog import CatalogStore, ProductResolver
from chat_orders.config import Settings
from chat_orders.database import build_engine, build_session_factory, init_db
from chat_orders.handlers import CommandHandler
from chat_orders.ingestion import WebhookIngestionGate
from chat_orders.ledger import IdempotencyLedger
from chat_orders.models import Product
from chat_orders.orders import OrderTransactionManager
from chat_orders.queries import StatusQueryService
from chat_orders.replies import ReplyDispatcher


class RecordingGateway:
    """Stands in for the messaging gateway and keeps what was sent."""

    def __init__(self):
        self.sent = []

    async def send(self, to, body, phone_number_id=None):
        self.sent.append((to, body, phone_number_id))

    async def aclose(self):
        pass


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        verify_token="secret-token",
        processing_timeout=10.0,
        ledger_wait_timeout=5.0,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def add_products(session_factory):
    async def _add(*rows):
        products = [Product(name=name, price=Decimal(str(price)), stock=stock) for name, price, stock in rows]
        async with session_factory() as session:
            async with session.begin():
                session.add_all(products)
        return products

    return _add


@pytest.fixture
def stock_of(session_factory):
    async def _stock(product_id):
        async with session_factory() as session:
            product = await session.get(Product, product_id)
            return product.stock

    return _stock


@pytest.fixture
def catalog(session_factory):
    return CatalogStore(session_factory)


@pytest.fixture
def resolver(catalog):
    return ProductResolver(catalog)


@pytest.fixture
def manager(session_factory, catalog):
    return OrderTransactionManager(session_factory, catalog)


@pytest.fixture
def status_service(session_factory):
    return StatusQueryService(session_factory)


@pytest.fixture
def ledger(session_factory):
    return IdempotencyLedger(session_factory, poll_interval=0.01)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def make_gate(ledger, catalog, resolver, manager, status_service, gateway):
    def _make(wait_timeout=5.0):
        handler = CommandHandler(catalog, resolver, manager, status_service)
        return WebhookIngestionGate(ledger, handler, ReplyDispatcher(gateway), wait_timeout=wait_timeout)

    return _make


@pytest.fixture
def gate(make_gate):
    return make_gate()
