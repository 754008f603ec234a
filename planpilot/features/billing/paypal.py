"""
PayPal Orders API client.

Minimal surface used by the payment routes:
- create_order: one-off CAPTURE order carrying a custom_id purchase reference
- get_order: read-only lookup, used to check ownership before capture
- capture_order: capture an approved order
- verify_webhook_signature: PayPal's verify-webhook-signature endpoint

Without client credentials the client runs in mock mode, returning sandbox
style order/capture payloads without network access (local development).
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging
import secrets
import time

import httpx

from planpilot.core.errors import ProviderError
from planpilot.features.subscriptions.service import PurchaseReference


logger = logging.getLogger(__name__)

API_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

WEBHOOK_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-cert-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
    "paypal-auth-algo",
)


class PaymentProviderError(ProviderError):
    """PayPal rejected a request or could not be reached."""
    code = "payment_provider_error"


@dataclass
class PaymentOrder:
    id: str
    status: str
    links: List[Dict[str, str]] = field(default_factory=list)
    custom_id: Optional[str] = None

    def approve_url(self) -> Optional[str]:
        for link in self.links:
            if link.get("rel") in ("approve", "payer-action"):
                return link.get("href")
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"order_id": self.id, "status": self.status, "links": self.links, "approve_url": self.approve_url()}


@dataclass
class PaymentCapture:
    order_id: str
    capture_id: str
    status: str
    amount: Optional[float]
    currency: Optional[str]
    custom_id: Optional[str]
    payer_email: Optional[str] = None

    def as_resource(self) -> Dict[str, Any]:
        """Shape expected by SubscriptionStore.check_capture_amount."""
        return {
            "id": self.capture_id,
            "custom_id": self.custom_id,
            "amount": {"value": self.amount, "currency_code": self.currency},
        }


def _mock_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def _format_amount(amount: float) -> str:
    return f"{amount:.2f}"


class PayPalClient:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        *,
        mode: str = "sandbox",
        webhook_id: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if mode not in API_BASE_URLS:
            raise ValueError(f"PAYPAL_MODE must be one of {sorted(API_BASE_URLS)}, got {mode!r}")
        self.client_id = client_id
        self.client_secret = client_secret
        self.mode = mode
        self.webhook_id = webhook_id
        self.base_url = API_BASE_URLS[mode]
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        # order_id -> (custom_id, amount, currency), mock mode only
        self._mock_orders: Dict[str, tuple] = {}

    @classmethod
    def from_settings(cls, settings_obj, **kwargs) -> "PayPalClient":
        return cls(
            settings_obj.PAYPAL_CLIENT_ID,
            settings_obj.PAYPAL_CLIENT_SECRET,
            mode=settings_obj.PAYPAL_MODE,
            webhook_id=settings_obj.PAYPAL_WEBHOOK_ID,
            timeout=settings_obj.PAYPAL_TIMEOUT_SECONDS,
            **kwargs,
        )

    @property
    def mock_mode(self) -> bool:
        return not (self.client_id and self.client_secret)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            response = await self._http.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("[paypal] token request failed", extra={"error_message": str(e)})
            raise PaymentProviderError("Failed to authenticate with PayPal")
        body = response.json()
        self._token = body["access_token"]
        # Refresh a minute early.
        self._token_expires_at = time.monotonic() + max(0, int(body.get("expires_in", 0)) - 60)
        return self._token

    async def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = await self._access_token()
        try:
            response = await self._http.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "[paypal] request rejected",
                extra={"path": path, "status": e.response.status_code, "error_message": e.response.text[:500]},
            )
            raise PaymentProviderError(f"PayPal request failed ({e.response.status_code})")
        except httpx.HTTPError as e:
            logger.error("[paypal] request failed", extra={"path": path, "error_message": str(e)})
            raise PaymentProviderError("PayPal is unreachable")
        return response.json() if response.content else {}

    async def create_order(self, reference: PurchaseReference, amount: float, currency: str = "USD") -> PaymentOrder:
        custom_id = reference.encode()
        if self.mock_mode:
            order_id = _mock_id("ORDER")
            self._mock_orders[order_id] = (custom_id, amount, currency)
            order = PaymentOrder(
                id=order_id,
                status="CREATED",
                custom_id=custom_id,
                links=[
                    {"href": f"{API_BASE_URLS['sandbox']}/v2/checkout/orders/{order_id}", "rel": "self", "method": "GET"},
                    {"href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}", "rel": "approve", "method": "GET"},
                ],
            )
        else:
            body = await self._request(
                "POST",
                "/v2/checkout/orders",
                json={
                    "intent": "CAPTURE",
                    "purchase_units": [
                        {
                            "custom_id": custom_id,
                            "description": f"PlanPilot {reference.plan_id} ({reference.billing_cycle.value})",
                            "amount": {"currency_code": currency, "value": _format_amount(amount)},
                        }
                    ],
                },
            )
            order = PaymentOrder(
                id=body["id"], status=body.get("status", "CREATED"), links=body.get("links", []), custom_id=custom_id
            )

        logger.info(
            "[paypal] order created",
            extra={"order_id": order.id, "user_id": reference.user_id, "amount": amount, "currency": currency, "mock": self.mock_mode},
        )
        return order

    async def get_order(self, order_id: str) -> PaymentOrder:
        """Look an order up without changing it."""
        if self.mock_mode:
            known = self._mock_orders.get(order_id)
            if known is None:
                raise PaymentProviderError(f"Unknown order: {order_id}")
            return PaymentOrder(id=order_id, status="APPROVED", custom_id=known[0])

        body = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        units = body.get("purchase_units")
        unit = units[0] if isinstance(units, list) and units and isinstance(units[0], dict) else {}
        return PaymentOrder(
            id=body.get("id", order_id),
            status=body.get("status", ""),
            links=body.get("links", []),
            custom_id=unit.get("custom_id"),
        )

    async def capture_order(self, order_id: str) -> PaymentCapture:
        if self.mock_mode:
            known = self._mock_orders.pop(order_id, None)
            if known is None:
                raise PaymentProviderError(f"Unknown order: {order_id}")
            custom_id, amount, currency = known
            capture = PaymentCapture(
                order_id=order_id,
                capture_id=_mock_id("CAPTURE"),
                status="COMPLETED",
                amount=amount,
                currency=currency,
                custom_id=custom_id,
                payer_email="buyer@example.com",
            )
        else:
            body = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
            capture = self._parse_capture(order_id, body)

        logger.info(
            "[paypal] order captured",
            extra={"order_id": order_id, "capture_id": capture.capture_id, "status": capture.status, "mock": self.mock_mode},
        )
        return capture

    @staticmethod
    def _parse_capture(order_id: str, body: Dict[str, Any]) -> PaymentCapture:
        units = body.get("purchase_units") or [{}]
        unit = units[0]
        captures = (unit.get("payments") or {}).get("captures") or [{}]
        first = captures[0]
        amount = first.get("amount") or {}
        raw_value = amount.get("value")
        return PaymentCapture(
            order_id=order_id,
            capture_id=first.get("id", ""),
            status=first.get("status") or body.get("status", ""),
            amount=float(raw_value) if raw_value is not None else None,
            currency=amount.get("currency_code"),
            custom_id=first.get("custom_id") or unit.get("custom_id"),
            payer_email=(body.get("payer") or {}).get("email_address"),
        )

    async def verify_webhook_signature(self, headers: Dict[str, str], event: Dict[str, Any]) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [name for name in WEBHOOK_SIGNATURE_HEADERS if not lowered.get(name)]
        if missing:
            logger.warning("[paypal] webhook missing signature headers", extra={"missing": ",".join(missing)})
            return False
        if not self.webhook_id or self.mock_mode:
            logger.warning("[paypal] webhook verification unavailable (no webhook id or credentials)")
            return False

        body = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={
                "transmission_id": lowered["paypal-transmission-id"],
                "cert_url": lowered.get("paypal-cert-url", ""),
                "cert_id": lowered["paypal-cert-id"],
                "auth_algo": lowered["paypal-auth-algo"],
                "transmission_sig": lowered["paypal-transmission-sig"],
                "transmission_time": lowered["paypal-transmission-time"],
                "webhook_id": self.webhook_id,
                "webhook_event": event,
            },
        )
        return body.get("verification_status") == "SUCCESS"
