"""
Pytest configuration and fixtures.

Tests run against a file-backed SQLite database (aiosqlite) and fake every
outbound HTTP endpoint with ``httpx.MockTransport``.
"""
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from qris_reconciler.config import Settings
from qris_reconciler.core.reconciliation import ReconciliationEngine
from qris_reconciler.core.webhook_dedup import WebhookReplayCache
from qris_reconciler.database.models import Base, Bot, Transaction, UserGateway
from qris_reconciler.database.repository import CredentialStore, TransactionRepository
from qris_reconciler.integrations import qris
from qris_reconciler.integrations.mutation_feed import MutationFeed
from qris_reconciler.timeutils import utcnow

BOT_ID = 1
OWNER_ID = 10
CALLBACK_URL = "http://merchant.test/callback"

# Static QRIS body without the trailing CRC tag
STATIC_QRIS_BODY = (
    "00020101021126570011ID.DANA.WWW011893600915000000000102090000000000303UMI"
    "51440014ID.CO.QRIS.WWW0215ID10200000000010303UMI"
    "5204481253033605802ID5910TOKO TESTS6007JAKARTA61051234062070703A01"
    "6304"
)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: pure unit tests")
    config.addinivalue_line("markers", "integration: tests touching the database")
    config.addinivalue_line("markers", "race: concurrent webhook/poll scenarios")


@pytest.fixture
def static_qris() -> str:
    """A well-formed static QRIS payload with a valid checksum."""
    return STATIC_QRIS_BODY + qris.crc16_ccitt(STATIC_QRIS_BODY)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}",
        redis_url=None,
        app_name="qris-reconciler-test",
        app_env="test",
        log_level="DEBUG",
        ws_hub_url="http://hub.test",
        ws_hub_secret="hub-secret",
        mutation_proxy_url="http://proxy.test",
        atlantic_base_url="http://atlantic.test",
        atlantic_proxy_url=None,
        qiospay_base_url="http://qiospay.test",
        pakasir_base_url="http://pakasir.test",
        public_base_url="http://reconciler.test",
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Create a fresh schema and yield a session factory."""
    engine = create_async_engine(
        test_settings.database_url,
        connect_args={"timeout": test_settings.database_busy_timeout},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    await engine.dispose()


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> TransactionRepository:
    return TransactionRepository(session_factory)


@pytest.fixture
def credential_store(session_factory: async_sessionmaker[AsyncSession]) -> CredentialStore:
    return CredentialStore(session_factory)


class GatewayStub:
    """
    Route table behind an ``httpx.MockTransport``.

    Routes are keyed by method and URL without query string. A route value
    is a JSON-able body, an ``httpx.Response`` or a callable taking the
    request and returning either.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []

    @staticmethod
    def _key(method: str, url: str) -> Tuple[str, str]:
        return method.upper(), url.split("?")[0].rstrip("/")

    def add(self, method: str, url: str, response: Any) -> None:
        self.routes[self._key(method, url)] = response

    def calls(self, method: str, url: str) -> List[httpx.Request]:
        key = self._key(method, url)
        return [r for r in self.requests if self._key(r.method, str(r.url)) == key]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(self._key(request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, json={"message": "no route"})
        if callable(route):
            route = route(request)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest_asyncio.fixture
async def http_client(gateway_stub: GatewayStub) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """AsyncClient whose every request is answered by ``gateway_stub``."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(gateway_stub.handler)) as client:
        yield client


@pytest_asyncio.fixture
async def seeded_bot(session_factory: async_sessionmaker[AsyncSession]) -> Bot:
    """One bot with an active configuration for every gateway family."""
    async with session_factory() as session:
        session.add_all(
            [
                UserGateway(
                    user_id=OWNER_ID,
                    gateway_code="orderkuota",
                    credentials={"username": "okuser", "token": "oktoken"},
                ),
                UserGateway(
                    user_id=OWNER_ID,
                    gateway_code="qiospay",
                    credentials={"merchant_code": "QP001", "api_key": "qpkey"},
                ),
                UserGateway(
                    user_id=OWNER_ID,
                    gateway_code="atlantic",
                    credentials={"api_key": "atl-key"},
                ),
                UserGateway(
                    user_id=OWNER_ID,
                    gateway_code="pakasir",
                    credentials={"slug": "tokotest", "api_key": "pk-key"},
                ),
            ]
        )
        bot = Bot(
            id=BOT_ID,
            user_id=OWNER_ID,
            name="Toko Bot",
            pg_api_key="bot-secret",
            settings={"callback_url": CALLBACK_URL},
        )
        session.add(bot)
        await session.commit()
    return bot


@pytest.fixture
def make_transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Factory inserting a pending transaction."""

    async def _make(
        order_id: str,
        amount: int,
        gateway: str = "orderkuota",
        created_at: Optional[datetime] = None,
        bot_id: int = BOT_ID,
        **fields: Any,
    ) -> Transaction:
        transaction = Transaction(
            order_id=order_id,
            bot_id=bot_id,
            amount=amount,
            payment_gateway=gateway,
            created_at=created_at or utcnow() - timedelta(minutes=5),
            product_name=fields.pop("product_name", "Netflix Premium"),
            **fields,
        )
        async with session_factory() as session:
            session.add(transaction)
            await session.commit()
        return transaction

    return _make


@pytest.fixture
def fanout(mocker: Any) -> Any:
    """Fanout double: records notify calls."""
    fake = mocker.AsyncMock()
    fake.notify.return_value = None
    return fake


@pytest.fixture
def engine(
    repository: TransactionRepository,
    credential_store: CredentialStore,
    fanout: Any,
    test_settings: Settings,
    http_client: httpx.AsyncClient,
) -> ReconciliationEngine:
    """Engine wired to the test database, fake HTTP and a fanout double."""
    return ReconciliationEngine(
        repository=repository,
        credentials=credential_store,
        fanout=fanout,
        mutation_feed=MutationFeed(test_settings, http_client),
        replay_cache=WebhookReplayCache(settings=test_settings),
        settings=test_settings,
        http_client=http_client,
    )
