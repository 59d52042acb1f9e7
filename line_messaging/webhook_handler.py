from __future__ import annotations

import json
import logging
from typing import Any

from core.enums import EventType
from core.models import InboundEvent
from flow.default_survey import ROOT_STEP_ID
from line_messaging import message_templates
from line_messaging.postback_data import RESTART_ACTION
from line_messaging.reply_client import LineReplyClient
from line_messaging.signature import verify_line_signature
from survey.dispatcher import EventDispatcher
from survey.store_factory import SurveyStores, create_event_dispatcher, create_survey_stores

logger = logging.getLogger(__name__)

_EVENT_TYPES = {
    "message": EventType.MESSAGE,
    "postback": EventType.POSTBACK,
    "follow": EventType.FOLLOW,
    "unfollow": EventType.UNFOLLOW,
}


class LineWebhookHandler:
    def __init__(
        self,
        config: dict[str, Any],
        reply_client: LineReplyClient | None = None,
        dispatcher: EventDispatcher | None = None,
    ) -> None:
        self.config = config
        self.line_conf = config.get("line_messaging", {})
        survey_conf = config.get("survey", {})
        self.enabled = bool(self.line_conf.get("enabled", False))
        self.channel_secret = str(self.line_conf.get("channel_secret", "") or "").strip()
        self.channel_access_token = str(self.line_conf.get("channel_access_token", "") or "").strip()
        self.timeout_sec = float(self.line_conf.get("timeout_sec", 10))
        allowed = self.line_conf.get("allowed_user_ids", [])
        self.allowed_user_ids = {
            str(user_id).strip()
            for user_id in (allowed if isinstance(allowed, list) else [])
            if str(user_id).strip()
        }
        self.restart_action = str(survey_conf.get("restart_action", RESTART_ACTION) or RESTART_ACTION)
        self.root_step_id = str(survey_conf.get("root_step_id", ROOT_STEP_ID) or ROOT_STEP_ID)

        if dispatcher is None:
            self.stores = create_survey_stores(config)
            self.dispatcher = create_event_dispatcher(config, stores=self.stores)
        else:
            self.dispatcher = dispatcher
            self.stores = SurveyStores(
                session_store=dispatcher.session_store,
                rate_limiter=dispatcher.rate_limiter,
                postback_deduplicator=dispatcher.postback_deduplicator,
            )
        self.reply_client = reply_client or LineReplyClient(
            channel_access_token=self.channel_access_token,
            api_base_url=str(self.line_conf.get("api_base_url", "https://api.line.me")),
            timeout_sec=self.timeout_sec,
        )

    def handle(self, body: bytes, signature: str | None) -> tuple[int, dict[str, Any]]:
        if not self.enabled:
            return 503, {"ok": False, "error": "line_messaging.enabled is false"}
        if not verify_line_signature(self.channel_secret, body, signature):
            logger.warning("line-signature-invalid")
            return 401, {"ok": False, "error": "invalid signature"}

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return 400, {"ok": False, "error": "invalid json payload"}
        events = payload.get("events", []) if isinstance(payload, dict) else None
        if not isinstance(events, list):
            return 400, {"ok": False, "error": "events must be list"}

        handled = 0
        skipped = 0
        errors: list[str] = []
        for event in events:
            if not isinstance(event, dict):
                skipped += 1
                continue
            try:
                if self._handle_event(event):
                    handled += 1
                else:
                    skipped += 1
            except Exception as exc:  # noqa: BLE001
                logger.exception("line-event-failed type=%s", event.get("type"))
                errors.append(str(exc))
        return 200, {"ok": len(errors) == 0, "handled": handled, "skipped": skipped, "errors": errors}

    def _handle_event(self, event: dict[str, Any]) -> bool:
        inbound = self._to_inbound_event(event)
        if inbound is None:
            return False

        result = self.dispatcher.dispatch(inbound)
        logger.debug("dispatch-result %s", result.to_dict())
        messages = message_templates.build_result_messages(
            result,
            restart_action=self.restart_action,
            root_step_id=self.root_step_id,
        )
        if messages:
            self._reply(inbound.reply_token, messages)
        return True

    def _to_inbound_event(self, event: dict[str, Any]) -> InboundEvent | None:
        source = event.get("source", {})
        source_type = str(source.get("type", "") or "") if isinstance(source, dict) else ""
        line_user_id = str(source.get("userId", "") or "").strip() if isinstance(source, dict) else ""
        if source_type != "user" or not line_user_id:
            return None
        if self.allowed_user_ids and line_user_id not in self.allowed_user_ids:
            logger.info("line-user-not-allowed user_id=%s", line_user_id)
            return None

        event_type = _EVENT_TYPES.get(str(event.get("type", "") or "").lower())
        if event_type is None:
            return None
        reply_token = str(event.get("replyToken", "") or "").strip()

        if event_type == EventType.MESSAGE:
            message = event.get("message", {})
            text = None
            if isinstance(message, dict) and str(message.get("type", "") or "").lower() == "text":
                text = str(message.get("text", "") or "")
            return InboundEvent(event_type=event_type, user_id=line_user_id, reply_token=reply_token, text=text)
        if event_type == EventType.POSTBACK:
            postback = event.get("postback", {})
            data = str(postback.get("data", "") or "") if isinstance(postback, dict) else ""
            return InboundEvent(
                event_type=event_type,
                user_id=line_user_id,
                reply_token=reply_token,
                postback_data=data,
            )
        return InboundEvent(event_type=event_type, user_id=line_user_id, reply_token=reply_token)

    def _reply(self, reply_token: str, messages: list[dict[str, Any]]) -> None:
        if not reply_token:
            return
        try:
            self.reply_client.reply(reply_token=reply_token, messages=messages)
        except Exception as exc:  # noqa: BLE001
            logger.warning("line-reply-failed error=%s", exc)
