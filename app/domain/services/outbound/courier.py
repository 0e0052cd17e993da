"""
Courier network (DoorDash Drive v2) API client.

create_delivery הוא idempotent לפי external_delivery_id: 409 מהשליחויות
אומר שהמשלוח כבר קיים, ואז מחזירים את המשלוח הקיים.
"""
from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any

import jwt

from app.core.clock import Clock, system_clock
from app.core.exceptions import UpstreamAuthenticationError, UpstreamRequestError
from app.core.logging import get_logger
from app.domain.services.outbound.base import RateLimitedClient

logger = get_logger(__name__)

SERVICE_NAME = "courier"
JWT_AUDIENCE = "doordash"
JWT_VERSION = "DD-JWT-V1"
JWT_TTL_SECONDS = 300
# רענון מוקדם לפני התפוגה
JWT_REFRESH_MARGIN_SECONDS = 15


def decode_signing_secret(secret: str) -> bytes:
    """DoorDash signing secrets are base64url without padding"""
    value = secret.strip()
    try:
        return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
    except (binascii.Error, ValueError) as e:
        raise UpstreamAuthenticationError(SERVICE_NAME, "DoorDash signing secret is not valid base64url") from e


class DoorDashJwtAuth:
    """Short-lived HS256 JWT, cached until shortly before expiry"""

    def __init__(
        self,
        developer_id: str,
        key_id: str,
        signing_secret: str,
        *,
        clock: Clock = system_clock,
    ):
        self.developer_id = (developer_id or "").strip()
        self.key_id = (key_id or "").strip()
        self._signing_secret = signing_secret or ""
        self.clock = clock
        self._token: str | None = None
        self._expires_at: int = 0

    @property
    def is_configured(self) -> bool:
        return bool(self.developer_id and self.key_id and self._signing_secret.strip())

    def _now(self) -> int:
        return int(self.clock.now().replace(tzinfo=timezone.utc).timestamp())

    def build_token(self) -> str:
        if not self.is_configured:
            raise UpstreamAuthenticationError(
                SERVICE_NAME,
                "DoorDash credentials are not configured (developer id, key id, signing secret)",
            )
        issued_at = self._now()
        claims = {
            "iss": self.developer_id,
            "kid": self.key_id,
            "aud": JWT_AUDIENCE,
            "iat": issued_at,
            "exp": issued_at + JWT_TTL_SECONDS,
            "jti": str(uuid.uuid4()),
        }
        token = jwt.encode(
            claims,
            decode_signing_secret(self._signing_secret),
            algorithm="HS256",
            headers={"kid": self.key_id, "dd-ver": JWT_VERSION},
        )
        self._token = token
        self._expires_at = claims["exp"]
        return token

    def token(self) -> str:
        if self._token and self._now() < self._expires_at - JWT_REFRESH_MARGIN_SECONDS:
            return self._token
        return self.build_token()

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token()}"}

    async def refresh(self) -> None:
        self._token = None
        self._expires_at = 0


@dataclass
class CourierDelivery:
    """Courier-side view of one delivery"""
    external_delivery_id: str
    courier_delivery_id: str | None = None
    status: str | None = None
    tracking_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, data: dict[str, Any], external_delivery_id: str) -> "CourierDelivery":
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        return cls(
            external_delivery_id=data.get("external_delivery_id") or external_delivery_id,
            courier_delivery_id=(
                data.get("delivery_id") or data.get("id")
                or data.get("support_reference") or nested.get("delivery_id")
            ),
            status=data.get("delivery_status") or data.get("status") or nested.get("status"),
            tracking_url=data.get("tracking_url") or nested.get("tracking_url"),
            raw=data,
        )


class CourierClient:
    """DoorDash Drive deliveries"""

    def __init__(self, http: RateLimitedClient, auth: DoorDashJwtAuth):
        self.http = http
        self.auth = auth

    async def create_delivery(self, payload: dict[str, Any]) -> CourierDelivery:
        external_id = payload["external_delivery_id"]
        response = await self.http.request(
            "POST",
            "/deliveries",
            operation="create_delivery",
            auth=self.auth,
            allow_status=(409,),
            json=payload,
        )
        if response.status_code == 409:
            logger.info(
                "Courier delivery already exists, fetching it",
                extra_data={"external_delivery_id": external_id},
            )
            existing = await self.get_delivery_status(external_id)
            if existing is None:
                raise UpstreamRequestError.from_response(
                    SERVICE_NAME,
                    "create_delivery",
                    response,
                    message="Courier reported a duplicate delivery that cannot be fetched",
                )
            return existing

        delivery = CourierDelivery.from_response(response.json(), external_id)
        logger.info(
            "Courier delivery created",
            extra_data={
                "external_delivery_id": external_id,
                "courier_delivery_id": delivery.courier_delivery_id,
                "status": delivery.status,
            },
        )
        return delivery

    async def get_delivery_status(self, external_delivery_id: str) -> CourierDelivery | None:
        response = await self.http.request(
            "GET",
            f"/deliveries/{external_delivery_id}",
            operation="get_delivery_status",
            auth=self.auth,
            allow_status=(404,),
        )
        if response.status_code == 404:
            return None
        return CourierDelivery.from_response(response.json(), external_delivery_id)

    async def cancel_delivery(self, external_delivery_id: str, reason: str) -> CourierDelivery | None:
        """
        Cancel a delivery; repeated cancels are harmless.

        Returns None when the courier has no such delivery or it can no
        longer be cancelled (already finished or cancelled).
        """
        response = await self.http.request(
            "PUT",
            f"/deliveries/{external_delivery_id}/cancel",
            operation="cancel_delivery",
            auth=self.auth,
            allow_status=(404, 409),
            json={"cancellation_reason": reason},
        )
        if response.status_code in (404, 409):
            logger.info(
                "Courier delivery not cancellable",
                extra_data={
                    "external_delivery_id": external_delivery_id,
                    "status_code": response.status_code,
                },
            )
            return None
        logger.info(
            "Courier delivery cancelled",
            extra_data={"external_delivery_id": external_delivery_id, "reason": reason},
        )
        return CourierDelivery.from_response(response.json(), external_delivery_id)
