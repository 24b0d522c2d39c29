"""Payment Gateway Adapter: the only code that talks to the payment processor.

All amounts cross this boundary as integer minor units (cents). Every
money-moving call takes an idempotency key so a retried operation never moves
money twice. The Stripe SDK is synchronous, so calls run in the default executor;
the API key is passed per request instead of being set on the module.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import stripe

from marketplace.config import settings
from marketplace.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_http_client: stripe.RequestsClient | None = None


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    client_secret: str | None
    status: str


@dataclass(frozen=True)
class TransferResult:
    id: str
    amount_minor: int


@dataclass(frozen=True)
class PayoutResult:
    id: str
    amount_minor: int


@dataclass(frozen=True)
class RefundResult:
    id: str
    amount_minor: int
    status: str


@dataclass(frozen=True)
class ConnectedAccount:
    id: str
    details_submitted: bool
    payouts_enabled: bool


@dataclass(frozen=True)
class GatewayEvent:
    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Contract the Escrow Ledger and webhook ingestion depend on."""

    @abstractmethod
    async def create_payment_intent(
        self, amount_minor: int, currency: str, metadata: dict[str, str], idempotency_key: str
    ) -> PaymentIntentResult: ...

    @abstractmethod
    async def create_transfer(
        self,
        amount_minor: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult: ...

    @abstractmethod
    async def create_payout(
        self,
        amount_minor: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PayoutResult: ...

    @abstractmethod
    async def create_refund(
        self,
        payment_intent_id: str,
        amount_minor: int | None,
        reason: str | None,
        idempotency_key: str,
    ) -> RefundResult: ...

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, signature: str, secret: str) -> GatewayEvent: ...

    @abstractmethod
    async def create_connected_account(self, email: str | None) -> str: ...

    @abstractmethod
    async def create_onboarding_link(self, account_id: str) -> str: ...

    @abstractmethod
    async def retrieve_account(self, account_id: str) -> ConnectedAccount: ...

    async def send_funds(
        self,
        amount_minor: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Transfer or pay out according to ``settings.payout_method``. Returns the reference."""
        if settings.payout_method == "payout":
            payout = await self.create_payout(
                amount_minor, currency, destination_account, idempotency_key, metadata
            )
            return payout.id
        transfer = await self.create_transfer(
            amount_minor, currency, destination_account, idempotency_key, metadata
        )
        return transfer.id


def _configure_http_client() -> None:
    """Bound every SDK request by ``stripe_api_timeout_seconds``.

    A hung call would otherwise hold the project lock indefinitely.
    """
    global _http_client
    if _http_client is None:
        _http_client = stripe.RequestsClient(timeout=settings.stripe_api_timeout_seconds)
        stripe.default_http_client = _http_client


class StripeGateway(PaymentGateway):
    """Stripe implementation (Payment Intents, Connect transfers, refunds)."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key
        _configure_http_client()

    async def _call(self, operation: str, fn, /, **kwargs: Any) -> Any:  # type: ignore[no-untyped-def]
        started = time.monotonic()
        try:
            result = await asyncio.get_event_loop().run_in_executor(
                None, lambda: fn(api_key=self._api_key, **kwargs),
            )
        except stripe.StripeError as exc:
            self._raise_translated(operation, exc, kwargs.get("idempotency_key"))
        logger.info(
            "Stripe %s ok (key=%s, %.0fms)",
            operation, kwargs.get("idempotency_key"), (time.monotonic() - started) * 1000,
        )
        return result

    @staticmethod
    def _raise_translated(operation: str, exc: Exception, idempotency_key: str | None) -> None:
        retryable = isinstance(
            exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)
        )
        logger.error(
            "Stripe %s failed (key=%s, retryable=%s): %s",
            operation, idempotency_key, retryable, exc,
        )
        message = getattr(exc, "user_message", None) or str(exc)
        raise ExternalServiceError(
            f"Payment processor {operation} failed: {message}", retryable=retryable
        ) from exc

    async def create_payment_intent(
        self, amount_minor: int, currency: str, metadata: dict[str, str], idempotency_key: str
    ) -> PaymentIntentResult:
        intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=amount_minor,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return PaymentIntentResult(
            id=intent.id, client_secret=intent.client_secret, status=intent.status
        )

    async def create_transfer(
        self,
        amount_minor: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        transfer = await self._call(
            "create_transfer",
            stripe.Transfer.create,
            amount=amount_minor,
            currency=currency,
            destination=destination_account,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return TransferResult(id=transfer.id, amount_minor=transfer.amount)

    async def create_payout(
        self,
        amount_minor: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PayoutResult:
        payout = await self._call(
            "create_payout",
            stripe.Payout.create,
            amount=amount_minor,
            currency=currency,
            stripe_account=destination_account,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return PayoutResult(id=payout.id, amount_minor=payout.amount)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_minor: int | None,
        reason: str | None,
        idempotency_key: str,
    ) -> RefundResult:
        params: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_minor is not None:
            params["amount"] = amount_minor
        if reason:
            # Stripe's own `reason` field is a fixed enum; keep ours in metadata.
            params["metadata"] = {"reason": reason[:500]}
        refund = await self._call(
            "create_refund", stripe.Refund.create, idempotency_key=idempotency_key, **params
        )
        return RefundResult(id=refund.id, amount_minor=refund.amount, status=refund.status)

    def verify_webhook(self, raw_body: bytes, signature: str, secret: str) -> GatewayEvent:
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Rejected webhook with invalid payload or signature: %s", exc)
            raise ExternalServiceError("Invalid webhook signature") from exc
        payload = event.to_dict()
        return GatewayEvent(id=payload["id"], type=payload["type"], data=payload.get("data", {}))

    async def create_connected_account(self, email: str | None) -> str:
        params: dict[str, Any] = {
            "type": "express",
            "capabilities": {"transfers": {"requested": True}},
        }
        if email:
            params["email"] = email
        account = await self._call("create_connected_account", stripe.Account.create, **params)
        return account.id

    async def create_onboarding_link(self, account_id: str) -> str:
        link = await self._call(
            "create_onboarding_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=settings.connect_refresh_url,
            return_url=settings.connect_return_url,
            type="account_onboarding",
        )
        return link.url

    async def retrieve_account(self, account_id: str) -> ConnectedAccount:
        account = await self._call("retrieve_account", stripe.Account.retrieve, id=account_id)
        return ConnectedAccount(
            id=account.id,
            details_submitted=bool(account.details_submitted),
            payouts_enabled=bool(account.payouts_enabled),
        )


def get_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured processor adapter."""
    from marketplace.services.secrets import get_processor_api_key

    return StripeGateway(api_key=get_processor_api_key())
