from __future__ import annotations

import json
from typing import Any
from urllib import error, request

MAX_REPLY_MESSAGES = 5


class LineMessagingApiError(RuntimeError):
    pass


class LineReplyClient:
    def __init__(
        self,
        channel_access_token: str,
        api_base_url: str = "https://api.line.me",
        timeout_sec: float = 10.0,
    ) -> None:
        self.channel_access_token = (channel_access_token or "").strip()
        self.api_base_url = (api_base_url or "https://api.line.me").rstrip("/")
        self.timeout_sec = float(timeout_sec)

    def reply(self, reply_token: str, messages: list[dict[str, Any]]) -> None:
        token = (reply_token or "").strip()
        if not token:
            raise LineMessagingApiError("reply token is empty")
        if not messages:
            return
        body = {"replyToken": token, "messages": messages[:MAX_REPLY_MESSAGES]}
        send_line_request(
            url=f"{self.api_base_url}/v2/bot/message/reply",
            channel_access_token=self.channel_access_token,
            timeout_sec=self.timeout_sec,
            payload=body,
        )


def send_line_request(
    url: str,
    channel_access_token: str,
    timeout_sec: float,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """POST ``payload`` (or GET when None) and return the decoded JSON body."""
    if not channel_access_token:
        raise LineMessagingApiError("line_messaging.channel_access_token is required")

    data = None
    method = "GET"
    if payload is not None:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        method = "POST"
    req = request.Request(url=url, data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json; charset=utf-8")
    req.add_header("Authorization", f"Bearer {channel_access_token}")
    try:
        with request.urlopen(req, timeout=timeout_sec) as resp:
            status = int(getattr(resp, "status", 200))
            raw = resp.read()
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore") if exc.fp is not None else ""
        raise LineMessagingApiError(f"line api error: status={exc.code} body={detail}") from exc
    except error.URLError as exc:
        raise LineMessagingApiError(f"line api connection error: {exc.reason}") from exc

    if status >= 400:
        raise LineMessagingApiError(f"line api error: status={status}")
    if not raw:
        return {}
    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise LineMessagingApiError("line api returned a non-json body") from exc
    return decoded if isinstance(decoded, dict) else {}
