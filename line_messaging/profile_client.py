from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import quote

from line_messaging.reply_client import LineMessagingApiError, send_line_request

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER_NAME = "お客様"


class ProfileClientProtocol(Protocol):
    def get_display_name(self, user_id: str) -> str: ...


class LineProfileClient:
    def __init__(
        self,
        channel_access_token: str,
        api_base_url: str = "https://api.line.me",
        timeout_sec: float = 10.0,
    ) -> None:
        self.channel_access_token = (channel_access_token or "").strip()
        self.api_base_url = (api_base_url or "https://api.line.me").rstrip("/")
        self.timeout_sec = float(timeout_sec)

    def get_display_name(self, user_id: str) -> str:
        target = (user_id or "").strip()
        if not target:
            raise LineMessagingApiError("profile user id is empty")
        profile = send_line_request(
            url=f"{self.api_base_url}/v2/bot/profile/{quote(target, safe='')}",
            channel_access_token=self.channel_access_token,
            timeout_sec=self.timeout_sec,
        )
        name = str(profile.get("displayName", "") or "").strip()
        if not name:
            raise LineMessagingApiError(f"profile has no displayName: user_id={target}")
        return name


class ProfileResolver:
    """Display-name lookup that never raises.

    Failures fall back to the placeholder. Callers keep the resolved name on
    the session, so nothing is cached here.
    """

    def __init__(
        self,
        client: ProfileClientProtocol | None,
        placeholder_name: str = DEFAULT_PLACEHOLDER_NAME,
    ) -> None:
        self.client = client
        self.placeholder_name = placeholder_name

    def resolve_display_name(self, user_id: str) -> str:
        if self.client is None:
            return self.placeholder_name
        try:
            name = self.client.get_display_name(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("profile-lookup-failed user_id=%s error=%s", user_id, exc)
            return self.placeholder_name
        return name
