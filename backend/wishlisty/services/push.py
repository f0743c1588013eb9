"""Best-effort push delivery to a registered device endpoint."""

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from wishlisty.core.config import Settings, settings
from wishlisty.core.errors import DeliveryError, InvalidDeviceToken


logger = logging.getLogger("wishlisty.push")

_INVALID_TOKEN_CODES = {"UNREGISTERED", "INVALID_ARGUMENT", "NOT_FOUND"}


@dataclass
class PushMessage:
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


class PushProvider(Protocol):
    async def send(self, device_token: str, message: PushMessage) -> None: ...


class NullPushProvider:
    async def send(self, device_token: str, message: PushMessage) -> None:
        logger.debug("Push disabled, dropping title=%s", message.title)


class HttpPushProvider:
    def __init__(
        self,
        gateway_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        android_channel: str = "wishlisty_notifications",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._gateway_url = gateway_url
        self._api_key = api_key
        self._timeout = timeout
        self._android_channel = android_channel
        self._transport = transport

    def _build_payload(self, device_token: str, message: PushMessage) -> dict:
        badge = message.data.get("unreadCount", "0")
        return {
            "message": {
                "token": device_token,
                "notification": {"title": message.title, "body": message.body},
                "data": message.data,
                "android": {
                    "priority": "high",
                    "notification": {"sound": "default", "channel_id": self._android_channel},
                },
                "apns": {
                    "payload": {
                        "aps": {"sound": "default", "badge": int(badge) if badge.isdigit() else 0},
                    },
                },
            }
        }

    async def send(self, device_token: str, message: PushMessage) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    self._gateway_url,
                    json=self._build_payload(device_token, message),
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"push gateway unreachable: {exc}") from exc

        if resp.is_success:
            return

        error_code = ""
        try:
            body = resp.json()
            error_code = str((body.get("error") or {}).get("status") or "")
        except (ValueError, AttributeError):
            pass

        if resp.status_code in (404, 410) or error_code in _INVALID_TOKEN_CODES:
            raise InvalidDeviceToken(f"device token rejected status={resp.status_code} code={error_code}")
        raise DeliveryError(f"push gateway error status={resp.status_code} code={error_code}")


def build_push_provider(config: Settings = settings) -> PushProvider:
    if not config.push_gateway_url.strip():
        logger.info("Push gateway not configured - push notifications disabled")
        return NullPushProvider()
    return HttpPushProvider(
        gateway_url=config.push_gateway_url.strip(),
        api_key=config.push_gateway_key,
        timeout=config.push_timeout_seconds,
        android_channel=config.push_android_channel,
    )
