"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite file per test (aiosqlite); the M-Pesa
gateway and the email notifier are mocked.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from redcart.config import Settings
from redcart.core.checkout import CheckoutService
from redcart.core.payment_processor import PaymentProcessor
from redcart.core.receipts import ReceiptIssuer
from redcart.core.reconciliation import ReconciliationEngine
from redcart.core.state_machine import PaymentStateMachine
from redcart.database.connection import build_session_factory
from redcart.database.models import (
    Base,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
    Product,
    User,
    new_id,
)
from redcart.integrations.callback_handler import MpesaCallbackHandler
from redcart.integrations.email_notifier import EmailDispatchResult, EmailNotifier
from redcart.integrations.mpesa_client import MpesaClient

from tests.helpers import stk_push_result, stk_query_result

SessionFactory = async_sessionmaker[AsyncSession]


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'redcart.db'}",
        app_name="redcart-test",
        app_env="test",
        log_level="DEBUG",
        mpesa_enabled=True,
        mpesa_env="sandbox",
        mpesa_consumer_key="consumer-key",
        mpesa_consumer_secret="consumer-secret",
        mpesa_shortcode="174379",
        mpesa_passkey="passkey",
        mpesa_callback_base_url="https://shop.example.com",
        smtp_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create the schema in a fresh SQLite file."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def user(session_factory: SessionFactory) -> User:
    async with session_factory() as session:
        async with session.begin():
            user = User(
                id=new_id(),
                email="jane@example.com",
                first_name="Jane",
                last_name="Wanjiku",
            )
            session.add(user)
    return user


@pytest_asyncio.fixture
async def other_user(session_factory: SessionFactory) -> User:
    async with session_factory() as session:
        async with session.begin():
            user = User(id=new_id(), email="otieno@example.com", first_name="Otieno", last_name="")
            session.add(user)
    return user


@pytest_asyncio.fixture
async def products(session_factory: SessionFactory) -> List[Product]:
    async with session_factory() as session:
        async with session.begin():
            items = [
                Product(
                    id=new_id(),
                    name="Kikoy Beach Towel",
                    slug="kikoy-beach-towel",
                    price=Decimal("1200.00"),
                    stock=5,
                ),
                Product(
                    id=new_id(),
                    name="Maasai Shuka",
                    slug="maasai-shuka",
                    price=Decimal("850.50"),
                    stock=2,
                ),
            ]
            session.add_all(items)
    return items


@pytest_asyncio.fixture
async def cart(session_factory: SessionFactory, user: User, products: List[Product]) -> Cart:
    """Cart with two towels and one shuka (total 3250.50)."""
    async with session_factory() as session:
        async with session.begin():
            cart = Cart(
                id=new_id(),
                user_id=user.id,
                items=[
                    CartItem(id=new_id(), product_id=products[0].id, quantity=2),
                    CartItem(id=new_id(), product_id=products[1].id, quantity=1),
                ],
            )
            session.add(cart)
    return cart


OrderFactory = Callable[..., Awaitable[Payment]]


@pytest.fixture
def make_mpesa_order(
    session_factory: SessionFactory, user: User, products: List[Product]
) -> OrderFactory:
    """
    Insert an MPESA order with its payment directly.

    Returns the payment; ``payment.order_id`` points at the order.
    """

    async def factory(
        status: PaymentStatus = PaymentStatus.PENDING,
        meta: Optional[Dict[str, Any]] = None,
        transaction_ref: Optional[str] = None,
        owner: Optional[User] = None,
        shipping_name: str = "Jane Wanjiku",
        amount: Decimal = Decimal("1500.00"),
    ) -> Payment:
        owner = owner or user
        order_id = new_id()
        async with session_factory() as session:
            async with session.begin():
                order = Order(
                    id=order_id,
                    user_id=owner.id,
                    status=(
                        OrderStatus.CONFIRMED
                        if status == PaymentStatus.SUCCESS
                        else OrderStatus.PENDING_PAYMENT
                    ),
                    payment_method=PaymentMethod.MPESA,
                    total=amount,
                    shipping_name=shipping_name,
                    shipping_phone="0712345678",
                    shipping_email=owner.email,
                    shipping_street="Moi Avenue 12",
                    shipping_city="Nairobi",
                    shipping_country="Kenya",
                    items=[
                        OrderItem(
                            id=new_id(),
                            product_id=products[0].id,
                            quantity=1,
                            unit_price=amount,
                            subtotal=amount,
                        )
                    ],
                )
                payment = Payment(
                    id=new_id(),
                    order_id=order_id,
                    provider=PaymentProvider.MPESA,
                    status=status,
                    amount=amount,
                    transaction_ref=transaction_ref,
                    meta=meta,
                )
                session.add(order)
                session.add(payment)
        return payment

    return factory


@pytest.fixture
def gateway() -> AsyncMock:
    """Mocked M-Pesa client."""
    mock = AsyncMock(spec=MpesaClient)
    mock.initiate_stk_push.return_value = stk_push_result()
    mock.query_stk_status.return_value = stk_query_result(None)
    return mock


@pytest.fixture
def notifier() -> AsyncMock:
    """Mocked email notifier that always reports success."""
    mock = AsyncMock(spec=EmailNotifier)
    mock.send_order_confirmation.return_value = EmailDispatchResult(status="sent")
    return mock


@pytest.fixture
def receipt_issuer(session_factory: SessionFactory, test_settings: Settings) -> ReceiptIssuer:
    return ReceiptIssuer(session_factory, test_settings)


@pytest.fixture
def state_machine(
    session_factory: SessionFactory, receipt_issuer: ReceiptIssuer, notifier: AsyncMock
) -> PaymentStateMachine:
    return PaymentStateMachine(session_factory, receipt_issuer, notifier)


@pytest.fixture
def reconciliation(
    gateway: AsyncMock, state_machine: PaymentStateMachine, session_factory: SessionFactory
) -> ReconciliationEngine:
    return ReconciliationEngine(gateway, state_machine, session_factory)


@pytest.fixture
def processor(
    gateway: AsyncMock,
    session_factory: SessionFactory,
    reconciliation: ReconciliationEngine,
    receipt_issuer: ReceiptIssuer,
    test_settings: Settings,
) -> PaymentProcessor:
    return PaymentProcessor(gateway, session_factory, reconciliation, receipt_issuer, test_settings)


@pytest.fixture
def checkout_service(
    session_factory: SessionFactory, state_machine: PaymentStateMachine
) -> CheckoutService:
    return CheckoutService(session_factory, state_machine)


@pytest.fixture
def callback_handler(
    state_machine: PaymentStateMachine, session_factory: SessionFactory
) -> MpesaCallbackHandler:
    return MpesaCallbackHandler(state_machine, session_factory)


@pytest_asyncio.fixture
async def client(
    session_factory: SessionFactory,
    test_settings: Settings,
    gateway: AsyncMock,
    notifier: AsyncMock,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client wired to the test database and mocked collaborators."""
    from redcart.api import dependencies
    from redcart.api.main import app

    app.dependency_overrides[dependencies.get_app_settings] = lambda: test_settings
    app.dependency_overrides[dependencies.get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[dependencies.get_gateway] = lambda: gateway
    app.dependency_overrides[dependencies.get_notifier] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user: User) -> Dict[str, str]:
    return {"X-User-ID": user.id}
