# app/client/guest_portal.py
from typing import Any
from uuid import UUID

import httpx

from app.client.chat_client import GuestChatSession
from app.client.countdown import GrantCountdown
from app.utils.datetime_utils import parse_iso_string


class GuestAccessError(Exception):
    def __init__(self, message: str, code: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class GuestPortal:
    """Guest view of one shared record, driven by the share token."""

    def __init__(self, client: httpx.AsyncClient, token: str) -> None:
        self._client = client
        self.token = token
        self.record: dict[str, Any] | None = None
        self.countdown: GrantCountdown | None = None

    async def validate(self, action: str = "view", details: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._client.post(
            "/guest/validate",
            json={"token": self.token, "action": action, "actionDetails": details},
        )
        body = response.json()
        if response.status_code != 200 or not body.get("valid"):
            raise GuestAccessError(
                body.get("error") or "Access link is not valid",
                body.get("code") or "UNKNOWN",
                response.status_code,
            )

        self.record = body
        expires_at = parse_iso_string(body["expiresAt"])
        if self.countdown is None:
            self.countdown = GrantCountdown(expires_at)
        else:
            self.countdown.update(expires_at)
        return body

    def can(self, permission: str) -> bool:
        if self.record is None:
            return False
        return bool(self.record["permissions"].get(permission))

    def chat_session(self, **kwargs: Any) -> GuestChatSession:
        if not self.can("allow_chat"):
            raise GuestAccessError("Chat is not enabled for this link", "FORBIDDEN", 403)
        return GuestChatSession(
            self._client,
            guest_token=self.token,
            patient_user_id=UUID(self.record["patientUserId"]),
            **kwargs,
        )
