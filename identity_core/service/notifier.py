from __future__ import annotations

import uuid
from collections import deque
from typing import Optional, Protocol

import httpx

from identity_core.logging import get_logger
from identity_core.service.errors import NotificationError

logger = get_logger(__name__)


class Notifier(Protocol):
    async def send(self, destination: str, template_id: str, variables: dict) -> str:
        """Deliver a templated message; returns the gateway delivery id."""
        ...


def _redact_destination(destination: str) -> str:
    if "@" not in destination:
        return "redacted"
    local, domain = destination.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Msg91Notifier:
    """Templated email delivery through the MSG91 email API.

    Payload shape follows the ``/email/send`` endpoint: one recipient carrying
    the template variables, a sender and the sending domain derived from the
    sender address.
    """

    def __init__(
        self,
        auth_key: str,
        *,
        base_url: str = "https://control.msg91.com/api/v5",
        from_name: str = "Identity Core",
        from_email: str = "no-reply@identity.local",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.auth_key = auth_key
        self.base_url = base_url.rstrip("/")
        self.from_name = from_name
        self.from_email = from_email
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                headers={"authkey": self.auth_key, "accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    def _payload(self, destination: str, template_id: str, variables: dict) -> dict:
        domain = self.from_email.split("@", 1)[-1]
        return {
            "recipients": [
                {"to": [{"email": destination}], "variables": dict(variables)}
            ],
            "from": {"name": self.from_name, "email": self.from_email},
            "domain": domain,
            "template_id": template_id,
        }

    async def send(self, destination: str, template_id: str, variables: dict) -> str:
        redacted = _redact_destination(destination)
        try:
            client = await self._get_client()
            response = await client.post(
                f"{self.base_url}/email/send",
                json=self._payload(destination, template_id, variables),
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "msg91_send_rejected",
                to=redacted,
                status_code=e.response.status_code,
                template_id=template_id,
            )
            raise NotificationError(
                f"Notification gateway rejected the message: {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            logger.error("msg91_send_timeout", to=redacted, error=str(e))
            raise NotificationError("Notification gateway timed out") from e
        except httpx.HTTPError as e:
            logger.error("msg91_send_failed", to=redacted, error=str(e))
            raise NotificationError("Failed to reach notification gateway") from e
        except ValueError as e:
            raise NotificationError("Notification gateway returned invalid JSON") from e

        if str(body.get("status", "success")).lower() not in {"success", "ok"}:
            logger.error("msg91_send_rejected", to=redacted, body=body)
            raise NotificationError(
                str(body.get("message") or "Notification gateway rejected the message")
            )
        data = body.get("data") or {}
        delivery_id = (
            data.get("unique_id") if isinstance(data, dict) else None
        ) or body.get("request_id") or str(uuid.uuid4())
        logger.info(
            "msg91_send_accepted", to=redacted, template_id=template_id, delivery_id=delivery_id
        )
        return delivery_id

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class LoggingNotifier:
    """Dev-mode notifier that logs instead of sending.

    Template variables are not logged; they carry the one-time code.
    """

    def __init__(self) -> None:
        self.sent: deque[tuple[str, str, dict]] = deque(maxlen=100)

    async def send(self, destination: str, template_id: str, variables: dict) -> str:
        self.sent.append((destination, template_id, dict(variables)))
        delivery_id = f"log-{uuid.uuid4()}"
        logger.info(
            "notification_dev_mode",
            to=_redact_destination(destination),
            template_id=template_id,
            delivery_id=delivery_id,
        )
        return delivery_id

    async def close(self) -> None:
        return None
