"""Async client for Firebase Cloud Messaging (legacy HTTP API)."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

DELIVERED = "delivered"
INVALID_TOKEN = "invalid_token"
ERROR = "error"

# FCM error codes meaning the token will never work again
INVALID_TOKEN_ERRORS = frozenset({"NotRegistered", "InvalidRegistration"})


@dataclass(frozen=True)
class PushResult:
    """Outcome of a single push send."""

    outcome: str
    error: str | None = None


class FcmPushClient:
    """Sends one notification per device token."""

    def __init__(
        self,
        server_key: str,
        url: str = "https://fcm.googleapis.com/fcm/send",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.server_key = server_key
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: dict[str, str] | None = None,
        image_url: str | None = None,
    ) -> PushResult:
        """Send a notification to *token*.

        Never raises: transport failures are reported as ``error`` results.
        """
        if not self.server_key:
            return PushResult(ERROR, "FCM server key not configured")

        notification: dict[str, str] = {"title": title, "body": body}
        if image_url:
            notification["image"] = image_url
        payload = {
            "to": token,
            "notification": notification,
            "data": {**(data or {}), "click_action": "FLUTTER_NOTIFICATION_CLICK"},
            "android": {"priority": "high", "notification": {"sound": "default"}},
            "apns": {"payload": {"aps": {"sound": "default", "badge": 1}}},
        }

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self._transport,
            ) as client:
                response = await client.post(
                    self.url,
                    json=payload,
                    headers={"Authorization": f"key={self.server_key}"},
                )
        except httpx.HTTPError as exc:
            return PushResult(ERROR, str(exc))

        if response.is_error:
            return PushResult(ERROR, f"HTTP {response.status_code}")
        try:
            data_out = response.json()
        except ValueError:
            return PushResult(ERROR, "Malformed FCM response")
        return self._parse_response(data_out)

    @staticmethod
    def _parse_response(data: dict) -> PushResult:
        if data.get("success") == 1:
            return PushResult(DELIVERED)
        results = data.get("results") or [{}]
        error = results[0].get("error") if isinstance(results[0], dict) else None
        if error in INVALID_TOKEN_ERRORS:
            return PushResult(INVALID_TOKEN, error)
        return PushResult(ERROR, error or "Unknown FCM error")
