"""
FastAPI dependency providers.

Services are built per request from these providers so tests can swap any
of them through ``app.dependency_overrides``.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redcart.config import Settings, get_settings
from redcart.core.checkout import CheckoutService
from redcart.core.errors import AuthenticationError
from redcart.core.orders import OrderQueries
from redcart.core.payment_processor import PaymentProcessor
from redcart.core.receipts import ReceiptIssuer
from redcart.core.reconciliation import ReconciliationEngine
from redcart.core.state_machine import PaymentStateMachine
from redcart.database.connection import get_session_factory
from redcart.database.models import User
from redcart.integrations.callback_handler import MpesaCallbackHandler
from redcart.integrations.email_notifier import EmailNotifier
from redcart.integrations.mpesa_client import MpesaClient
from redcart.monitoring.health import HealthCheck


def get_app_settings() -> Settings:
    return get_settings()


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def get_gateway(settings: Settings = Depends(get_app_settings)) -> MpesaClient:
    return MpesaClient(settings)


def get_notifier(settings: Settings = Depends(get_app_settings)) -> EmailNotifier:
    return EmailNotifier(settings)


async def get_current_user_id(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> str:
    """
    Resolve the caller from the identity header set by the auth layer.

    Raises:
        AuthenticationError: If the header is missing or names no known user
    """
    user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    if not user_id:
        raise AuthenticationError("Unauthorized")

    async with session_factory() as session:
        user = await session.get(User, user_id)
    if user is None:
        raise AuthenticationError("Invalid token")
    return user.id


def get_receipt_issuer(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> ReceiptIssuer:
    return ReceiptIssuer(session_factory, settings)


def get_state_machine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    receipt_issuer: ReceiptIssuer = Depends(get_receipt_issuer),
    notifier: EmailNotifier = Depends(get_notifier),
) -> PaymentStateMachine:
    return PaymentStateMachine(session_factory, receipt_issuer, notifier)


def get_reconciliation_engine(
    gateway: MpesaClient = Depends(get_gateway),
    state_machine: PaymentStateMachine = Depends(get_state_machine),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> ReconciliationEngine:
    return ReconciliationEngine(gateway, state_machine, session_factory)


def get_payment_processor(
    gateway: MpesaClient = Depends(get_gateway),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    reconciliation: ReconciliationEngine = Depends(get_reconciliation_engine),
    receipt_issuer: ReceiptIssuer = Depends(get_receipt_issuer),
    settings: Settings = Depends(get_app_settings),
) -> PaymentProcessor:
    return PaymentProcessor(gateway, session_factory, reconciliation, receipt_issuer, settings)


def get_checkout_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    state_machine: PaymentStateMachine = Depends(get_state_machine),
) -> CheckoutService:
    return CheckoutService(session_factory, state_machine)


def get_callback_handler(
    state_machine: PaymentStateMachine = Depends(get_state_machine),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> MpesaCallbackHandler:
    return MpesaCallbackHandler(state_machine, session_factory)


def get_order_queries(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> OrderQueries:
    return OrderQueries(session_factory)


def get_health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> HealthCheck:
    return HealthCheck(session_factory)
