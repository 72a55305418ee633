"""
Pytest configuration and fixtures.

Every test gets its own SQLite database, a registry whose provider clients
talk to an in-process fake provider, and a recording audit sink.
"""
import functools
import json
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from tenacity import wait_none

from paygate.config import Settings
from paygate.core.reconciliation import ReconciliationService
from paygate.core.refunds import RefundOrchestrator
from paygate.core.router import PaymentRequestRouter
from paygate.core.stores import SqlOrderStore
from paygate.database.connection import build_session_factory
from paygate.database.models import Base, Order, Payment
from paygate.enums import OrderStatus, PaymentMethod, PaymentStatus
from paygate.integrations.registry import GatewayRegistry
from paygate.signing import Operation, Provider, SignatureEngine, SigningKeys

ORDER_ID = "O1"
ORDER_TOTAL = Decimal("100000")


class FakeProvider:
    """
    In-process stand-in for every provider API.

    Routes are matched on the end of the request path. A route holds a list
    of answers; each call consumes one until only the last remains.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def respond(self, path_suffix: str, *answers: Any) -> None:
        """
        Register answers for a path.

        Each answer is a ``(status_code, json_body)`` tuple or an httpx
        exception class to raise.
        """
        self.routes[path_suffix] = list(answers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, answers in self.routes.items():
            if request.url.path.endswith(suffix):
                answer = answers.pop(0) if len(answers) > 1 else answers[0]
                if isinstance(answer, type) and issubclass(answer, Exception):
                    raise answer("simulated failure", request=request)
                status_code, body = answer
                return httpx.Response(status_code, json=body)
        return httpx.Response(404, json={"message": "no route"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, path_suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    @staticmethod
    def json_body(request: httpx.Request) -> Dict[str, Any]:
        return json.loads(request.content.decode("utf-8"))

    @staticmethod
    def form_body(request: httpx.Request) -> Dict[str, str]:
        return dict(parse_qsl(request.content.decode("utf-8"), keep_blank_values=True))


class RecordingAuditSink:
    """Audit sink keeping entries in memory."""

    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    async def record(
        self,
        actor: Optional[str],
        action: str,
        resource: str,
        resource_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.entries.append(
            {
                "actor": actor,
                "action": action,
                "resource": resource,
                "resource_id": resource_id,
                "old_value": old_value,
                "new_value": new_value,
                "context": context,
            }
        )

    def actions(self) -> List[str]:
        return [entry["action"] for entry in self.entries]


class RecordingOrderStore(SqlOrderStore):
    """SqlOrderStore that appends every projection it runs to a shared list."""

    def __init__(self, session: AsyncSession, updates: List[Tuple[str, PaymentStatus]]):
        super().__init__(session)
        self.updates = updates

    async def update_payment_state(self, order_id: str, status: PaymentStatus) -> None:
        await super().update_payment_state(order_id, status)
        self.updates.append((order_id, PaymentStatus(status)))


class CallbackFactory:
    """Builds provider callbacks signed the way each provider signs them."""

    def __init__(self, signer: SignatureEngine, settings: Settings):
        self.signer = signer
        self.settings = settings

    def vnpay(
        self,
        reference: str,
        amount: Decimal = ORDER_TOTAL,
        response_code: str = "00",
        transaction_no: str = "14000001",
    ) -> Dict[str, Any]:
        payload = {
            "vnp_Amount": str(int(amount * 100)),
            "vnp_BankCode": "NCB",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": "Thanh toan don hang O1",
            "vnp_PayDate": "20261019103000",
            "vnp_ResponseCode": response_code,
            "vnp_TmnCode": self.settings.vnpay_tmn_code,
            "vnp_TransactionNo": transaction_no,
            "vnp_TransactionStatus": response_code,
            "vnp_TxnRef": reference,
        }
        payload["vnp_SecureHash"] = self.signer.sign(Provider.VNPAY, Operation.CALLBACK, payload)
        return payload

    def momo(
        self,
        reference: str,
        amount: Decimal = ORDER_TOTAL,
        result_code: int = 0,
        trans_id: str = "4088878653",
    ) -> Dict[str, Any]:
        payload = {
            "partnerCode": self.settings.momo_partner_code,
            "orderId": reference,
            "requestId": reference,
            "amount": int(amount),
            "orderInfo": "Payment for order O1",
            "orderType": "momo_wallet",
            "transId": trans_id,
            "resultCode": result_code,
            "message": "Successful." if result_code == 0 else "Transaction denied by user.",
            "payType": "qr",
            "responseTime": 1760841000000,
            "extraData": "",
        }
        payload["signature"] = self.signer.sign(Provider.MOMO, Operation.CALLBACK, payload)
        return payload

    def zalopay(
        self,
        reference: str,
        amount: Decimal = ORDER_TOTAL,
        return_code: int = 1,
        zp_trans_id: str = "251019000000123",
    ) -> Dict[str, Any]:
        payload = {
            "app_id": self.settings.zalopay_app_id,
            "app_trans_id": reference,
            "app_time": 1760841000000,
            "app_user": "U1",
            "amount": int(amount),
            "zp_trans_id": zp_trans_id,
            "return_code": return_code,
            "return_message": "success" if return_code == 1 else "failed",
        }
        payload["mac"] = self.signer.sign(Provider.ZALOPAY, Operation.CALLBACK, payload)
        return payload


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'paygate_test.db'}",
        app_name="paygate-test",
        app_env="test",
        log_level="DEBUG",
        gateway_timeout_seconds=2.0,
        gateway_query_max_attempts=3,
        circuit_breaker_failure_threshold=3,
        circuit_breaker_reset_seconds=60,
        vnpay_tmn_code="PAYGATE1",
        vnpay_hash_secret="vnpay-test-secret",
        vnpay_payment_url="https://vnpay.test/paymentv2/vpcpay.html",
        vnpay_api_url="https://vnpay.test/merchant_webapi/api/transaction",
        momo_partner_code="MOMOTEST",
        momo_access_key="momo-access-key",
        momo_secret_key="momo-secret-key",
        momo_api_url="https://momo.test/v2/gateway/api",
        zalopay_app_id="2553",
        zalopay_key1="zalopay-key1",
        zalopay_key2="zalopay-key2",
        zalopay_api_url="https://zalopay.test/v2",
    )


@pytest.fixture
def signer(test_settings: Settings) -> SignatureEngine:
    """Signature engine with the test secrets."""
    return SignatureEngine(SigningKeys.from_settings(test_settings))


@pytest.fixture
def fake_provider() -> FakeProvider:
    """Fake provider APIs."""
    return FakeProvider()


@pytest.fixture
def callbacks(signer: SignatureEngine, test_settings: Settings) -> CallbackFactory:
    """Signed callback builder."""
    return CallbackFactory(signer, test_settings)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    """In-memory audit trail."""
    return RecordingAuditSink()


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database engine with a fresh schema."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def order(session_factory: async_sessionmaker[AsyncSession]) -> Order:
    """Seed order O1 with a total of 100000 VND."""
    async with session_factory() as db:
        async with db.begin():
            row = Order(
                order_id=ORDER_ID,
                user_id="U1",
                total_amount=ORDER_TOTAL,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
            )
            db.add(row)
    return row


@pytest_asyncio.fixture
async def gateways(
    test_settings: Settings, signer: SignatureEngine, fake_provider: FakeProvider
) -> AsyncGenerator[GatewayRegistry, Any]:
    """Adapter registry wired to the fake provider."""
    registry = GatewayRegistry.from_settings(
        test_settings,
        signer=signer,
        transport=fake_provider.transport,
        query_wait=wait_none(),
    )
    yield registry
    await registry.aclose()


@pytest.fixture
def reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    gateways: GatewayRegistry,
    audit_sink: RecordingAuditSink,
    test_settings: Settings,
) -> ReconciliationService:
    """Reconciliation service under test."""
    return ReconciliationService(
        session_factory, gateways, audit=audit_sink, settings=test_settings
    )


@pytest.fixture
def order_updates() -> List[Tuple[str, PaymentStatus]]:
    """Order projections run by ``recording_reconciliation``."""
    return []


@pytest.fixture
def recording_reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    gateways: GatewayRegistry,
    audit_sink: RecordingAuditSink,
    test_settings: Settings,
    order_updates: List[Tuple[str, PaymentStatus]],
) -> ReconciliationService:
    """Reconciliation service recording each order update into ``order_updates``."""
    return ReconciliationService(
        session_factory,
        gateways,
        audit=audit_sink,
        order_store_factory=functools.partial(RecordingOrderStore, updates=order_updates),
        settings=test_settings,
    )


@pytest.fixture
def payment_router(
    reconciliation: ReconciliationService, test_settings: Settings
) -> PaymentRequestRouter:
    """Payment request router under test."""
    return PaymentRequestRouter(reconciliation, settings=test_settings)


@pytest.fixture
def refunds(reconciliation: ReconciliationService) -> RefundOrchestrator:
    """Refund orchestrator under test."""
    return RefundOrchestrator(reconciliation)


@pytest.fixture
def make_pending(
    reconciliation: ReconciliationService, order: Order
) -> Callable[..., Any]:
    """Create a PENDING payment for order O1."""

    async def _make(
        method: PaymentMethod, reference: str, amount: Decimal = ORDER_TOTAL
    ) -> Payment:
        payment, created = await reconciliation.create_pending(
            ORDER_ID, method, amount, reference
        )
        assert created
        return payment

    return _make


@pytest.fixture
def insert_payment(
    session_factory: async_sessionmaker[AsyncSession], order: Order
) -> Callable[..., Any]:
    """Insert a payment row in any status, bypassing the state machine."""

    async def _insert(
        status: PaymentStatus,
        method: PaymentMethod = PaymentMethod.MOMO,
        reference: str = "REF-SEEDED",
        transaction_id: Optional[str] = None,
    ) -> Payment:
        async with session_factory() as db:
            async with db.begin():
                payment = Payment(
                    order_id=ORDER_ID,
                    payment_method=method.value,
                    amount=ORDER_TOTAL,
                    status=status.value,
                    reference_number=reference,
                    transaction_id=transaction_id,
                    gateway_data={},
                    version=1,
                )
                db.add(payment)
        return payment

    return _insert


@pytest.fixture
def order_state(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Read (status, payment_status) of an order as stored."""

    async def _read(order_id: str = ORDER_ID) -> Tuple[str, str]:
        async with session_factory() as db:
            row = await db.get(Order, order_id)
            return row.status, row.payment_status

    return _read


@pytest.fixture
def stored_payment(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Read a payment row as stored."""

    async def _read(payment_id: Any) -> Payment:
        async with session_factory() as db:
            return await db.get(Payment, payment_id)

    return _read
