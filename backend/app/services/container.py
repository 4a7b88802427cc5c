from __future__ import annotations

from flask import current_app

from app.integrations.common import GatewayFailure, IntegrationDisabledError, IntegrationMisconfiguredError
from app.integrations.courier.base import CourierClient
from app.integrations.courier.factory import build_courier_client
from app.integrations.payments.base import PaymentsProvider
from app.integrations.payments.factory import build_payments_provider
from app.services.errors import ErrorKind, WorkflowError
from app.services.stores import OrderStore, SqlOrderStore
from app.utils.settings import get_settings

# app.extensions keys; tests put fakes here
ORDER_STORE_KEY = "rebooked.order_store"
PAYMENTS_KEY = "rebooked.payments"
COURIER_KEY = "rebooked.courier"


def get_order_store() -> OrderStore:
    store = current_app.extensions.get(ORDER_STORE_KEY)
    if store is None:
        store = SqlOrderStore()
        current_app.extensions[ORDER_STORE_KEY] = store
    return store


def _not_configured(capability: str, err: Exception) -> WorkflowError:
    current_app.logger.warning("integration_unavailable capability=%s err=%s", capability, err)
    return WorkflowError(
        ErrorKind.GATEWAY_ERROR,
        f"{capability} integration unavailable",
        details={"failure": GatewayFailure.NOT_CONFIGURED.value, "reason": str(err)},
    )


def get_payments() -> PaymentsProvider:
    provider = current_app.extensions.get(PAYMENTS_KEY)
    if provider is not None:
        return provider
    try:
        return build_payments_provider(get_settings())
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        raise _not_configured("payments", e) from e


def get_courier() -> CourierClient:
    client = current_app.extensions.get(COURIER_KEY)
    if client is not None:
        return client
    try:
        return build_courier_client(get_settings())
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        raise _not_configured("courier", e) from e


def override(*, store: OrderStore | None = None, payments: PaymentsProvider | None = None, courier: CourierClient | None = None) -> None:
    if store is not None:
        current_app.extensions[ORDER_STORE_KEY] = store
    if payments is not None:
        current_app.extensions[PAYMENTS_KEY] = payments
    if courier is not None:
        current_app.extensions[COURIER_KEY] = courier
