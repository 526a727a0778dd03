"""
Notifier

Best-effort outbound messages for customers and delivery partners.

Channels:
- whatsapp: WhatsApp Cloud API (Meta Graph), customer messages
- email:    SendGrid v3 mail/send, partner assignment mails
- push:     Expo push service, delivery app

A failed send raises NotifierFailure. The effect dispatcher logs it; nothing
is retried and the order transition is never affected.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from orderflow.core.config import settings
from orderflow.core.exceptions import NotifierFailure

logger = logging.getLogger(__name__)

CHANNEL_WHATSAPP = "whatsapp"
CHANNEL_EMAIL = "email"
CHANNEL_PUSH = "push"


# template -> (title/subject, body)
TEMPLATES: Dict[str, tuple] = {
    "order_confirmed": (
        "Order confirmed",
        "Hi {customer_name}, your order {order_code} for {amount} is confirmed.",
    ),
    "order_preparing": ("Order update", "Your order {order_code} is being prepared."),
    "order_ready": ("Order ready", "Your order {order_code} is ready."),
    "order_out_for_delivery": ("Order on the way", "Your order {order_code} is out for delivery."),
    "order_delivered": ("Order delivered", "Your order {order_code} has been delivered. Enjoy your meal!"),
    "order_cancelled": ("Order cancelled", "Your order {order_code} has been cancelled. {reason}"),
    "payment_failed": (
        "Payment failed",
        "Payment for order {order_code} did not go through. Please try again.",
    ),
    "refund_initiated": (
        "Refund initiated",
        "A refund of {amount} for order {order_code} has been initiated.",
    ),
    "refund_completed": (
        "Refund processed",
        "Your refund of {amount} for order {order_code} has been processed.",
    ),
    "refund_delayed": (
        "Refund update",
        "We could not complete the refund for order {order_code} yet. Our team will contact you.",
    ),
    "refund_rejected": ("Refund update", "The refund for order {order_code} was not approved. {reason}"),
    "delivery_time_updated": (
        "Delivery time",
        "Your order {order_code} is expected at {estimated_at}.",
    ),
    "partner_assigned": (
        "New delivery assigned",
        "Order {order_code} for {customer_name} ({customer_phone}), {amount}. Deliver to: {address}",
    ),
    "partner_order_cancelled": ("Order cancelled", "Order {order_code} was cancelled. Do not deliver it."),
}


class _SafeParams(dict):
    def __missing__(self, key):
        return ""


def render(template: str, params: Optional[Dict[str, Any]] = None) -> tuple:
    if template not in TEMPLATES:
        raise NotifierFailure(f"Unknown notification template '{template}'")
    title, body = TEMPLATES[template]
    values = _SafeParams(params or {})
    return title.format_map(values), body.format_map(values).strip()


@dataclass
class SendResult:
    success: bool
    channel: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None


class Notifier(Protocol):
    async def send(self, channel: str, recipient: str, template: str, params: Dict[str, Any]) -> SendResult: ...


class _HttpChannel:
    channel: str = ""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=15.0, headers=self._headers())
        return self._http_client

    async def close(self):
        """Explicit cleanup method."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> httpx.Response:
        http = await self._get_http_client()
        try:
            resp = await http.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotifierFailure(f"{self.channel} send failed: {e}", channel=self.channel) from e
        if resp.status_code >= 400:
            raise NotifierFailure(
                f"{self.channel} send failed: {resp.status_code} - {resp.text[:200]}",
                channel=self.channel,
                details={"status_code": resp.status_code},
            )
        return resp


class WhatsAppNotifier(_HttpChannel):
    channel = CHANNEL_WHATSAPP
    GRAPH_API_BASE = "https://graph.facebook.com/v18.0"

    def __init__(self, access_token: Optional[str] = None, phone_number_id: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.access_token = access_token if access_token is not None else settings.WHATSAPP_ACCESS_TOKEN
        self.phone_number_id = phone_number_id if phone_number_id is not None else settings.WHATSAPP_PHONE_NUMBER_ID

    def _headers(self):
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    async def send(self, recipient: str, template: str, params: Dict[str, Any]) -> SendResult:
        if not self.access_token or not self.phone_number_id:
            logger.warning("WhatsApp not configured, skipping send")
            return SendResult(success=False, channel=self.channel, error="WhatsApp not configured")

        _, body = render(template, params)
        resp = await self._post(
            f"{self.GRAPH_API_BASE}/{self.phone_number_id}/messages",
            {
                "messaging_product": "whatsapp",
                "to": recipient.lstrip("+"),
                "type": "text",
                "text": {"body": body},
            },
        )
        data = resp.json()
        message_id = (data.get("messages") or [{}])[0].get("id")
        return SendResult(success=True, channel=self.channel, message_id=message_id)


class SendGridEmailNotifier(_HttpChannel):
    channel = CHANNEL_EMAIL
    BASE_URL = "https://api.sendgrid.com/v3"

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.from_email = settings.SENDGRID_FROM_EMAIL
        self.from_name = settings.SENDGRID_FROM_NAME

    def _headers(self):
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def send(self, recipient: str, template: str, params: Dict[str, Any]) -> SendResult:
        if not self.api_key:
            logger.warning("SendGrid API key not configured")
            return SendResult(success=False, channel=self.channel, error="Email not configured")

        subject, body = render(template, params)
        resp = await self._post(
            f"{self.BASE_URL}/mail/send",
            {
                "personalizations": [{"to": [{"email": recipient}]}],
                "from": {"email": self.from_email, "name": self.from_name},
                "subject": subject,
                "content": [{"type": "text/plain", "value": body}],
            },
        )
        return SendResult(success=True, channel=self.channel, message_id=resp.headers.get("X-Message-Id"))


class ExpoPushNotifier(_HttpChannel):
    channel = CHANNEL_PUSH

    def __init__(self, push_url: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.push_url = push_url or settings.EXPO_PUSH_URL

    async def send(self, recipient: str, template: str, params: Dict[str, Any]) -> SendResult:
        title, body = render(template, params)
        resp = await self._post(
            self.push_url,
            {
                "to": recipient,
                "title": title,
                "body": body,
                "sound": "default",
                "priority": "high",
                "data": {"order_code": params.get("order_code"), "template": template},
            },
        )
        data = resp.json().get("data") or {}
        if isinstance(data, dict) and data.get("status") == "error":
            raise NotifierFailure(f"Expo push rejected: {data.get('message')}", channel=self.channel)
        return SendResult(success=True, channel=self.channel, message_id=data.get("id") if isinstance(data, dict) else None)


class CompositeNotifier:
    """Routes ``send(channel, ...)`` to the channel implementation."""

    def __init__(self, channels: Optional[Dict[str, Any]] = None):
        if channels is None:
            channels = {
                CHANNEL_WHATSAPP: WhatsAppNotifier(),
                CHANNEL_EMAIL: SendGridEmailNotifier(),
                CHANNEL_PUSH: ExpoPushNotifier(),
            }
        self.channels = channels

    async def send(self, channel: str, recipient: str, template: str, params: Optional[Dict[str, Any]] = None) -> SendResult:
        impl = self.channels.get(channel)
        if impl is None:
            raise NotifierFailure(f"No notifier for channel '{channel}'", channel=channel)
        result = await impl.send(recipient, template, params or {})
        if result.success:
            logger.info(f"Sent {template} via {channel} ({result.message_id or 'no id'})")
        return result

    async def close(self):
        for impl in self.channels.values():
            close = getattr(impl, "close", None)
            if close is not None:
                await close()
