from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from flow.default_survey import ROOT_STEP_ID
from flow.graph_store import FlowGraphStoreProtocol
from flow.loader import create_flow_graph_store
from line_messaging.postback_data import RESTART_ACTION, START_ACTION
from line_messaging.profile_client import DEFAULT_PLACEHOLDER_NAME, LineProfileClient, ProfileResolver
from survey.dispatcher import DEFAULT_TRIGGER_KEYWORDS, EventDispatcher
from survey.dynamo_store import DynamoPostbackDeduplicator, DynamoRateLimiter, DynamoSessionStore
from survey.postback_dedupe import InMemoryPostbackDeduplicator
from survey.rate_limiter import InMemoryRateLimiter
from survey.session_store import InMemorySessionStore
from survey.store_interface import PostbackDeduplicatorProtocol, RateLimiterProtocol, SessionStoreProtocol


@dataclass(slots=True)
class SurveyStores:
    session_store: SessionStoreProtocol
    rate_limiter: RateLimiterProtocol
    postback_deduplicator: PostbackDeduplicatorProtocol

    def sweepables(self) -> list[Any]:
        return [self.session_store, self.rate_limiter, self.postback_deduplicator]


def create_survey_stores(config: dict[str, Any]) -> SurveyStores:
    store_conf = config.get("store", {})
    backend = str(store_conf.get("backend", "memory") or "memory").strip().lower()
    root_step_id = str(config.get("survey", {}).get("root_step_id", ROOT_STEP_ID) or ROOT_STEP_ID)
    session_conf = config.get("session", {})
    session_ttl_minutes = int(session_conf.get("ttl_minutes", 30))
    in_flight_lease_sec = float(session_conf.get("in_flight_lease_sec", 30))
    rate_conf = config.get("rate_limit", {})
    window_sec = float(rate_conf.get("window_sec", 10))
    max_events = int(rate_conf.get("max_events", 3))
    postback_conf = config.get("postback", {})
    postback_ttl_minutes = int(postback_conf.get("ttl_minutes", 30))
    max_records = int(postback_conf.get("max_records", 20))

    if backend == "dynamodb":
        ddb_conf = store_conf.get("dynamodb", {}) if isinstance(store_conf, dict) else {}
        tables = ddb_conf.get("tables", {}) if isinstance(ddb_conf, dict) else {}
        region_name = _as_optional_str(ddb_conf.get("region"))
        table_prefix = str(ddb_conf.get("table_prefix", "line-survey"))
        return SurveyStores(
            session_store=DynamoSessionStore(
                root_step_id=root_step_id,
                session_ttl_minutes=session_ttl_minutes,
                in_flight_lease_sec=in_flight_lease_sec,
                region_name=region_name,
                table_prefix=table_prefix,
                table_name=_as_optional_str(tables.get("sessions")),
            ),
            rate_limiter=DynamoRateLimiter(
                window_sec=window_sec,
                max_events=max_events,
                region_name=region_name,
                table_prefix=table_prefix,
                table_name=_as_optional_str(tables.get("rate_limits")),
            ),
            postback_deduplicator=DynamoPostbackDeduplicator(
                postback_ttl_minutes=postback_ttl_minutes,
                max_records=max_records,
                region_name=region_name,
                table_prefix=table_prefix,
                table_name=_as_optional_str(tables.get("postbacks")),
            ),
        )
    if backend != "memory":
        raise ValueError(f"unsupported store backend: {backend}")

    return SurveyStores(
        session_store=InMemorySessionStore(root_step_id=root_step_id, session_ttl_minutes=session_ttl_minutes),
        rate_limiter=InMemoryRateLimiter(window_sec=window_sec, max_events=max_events),
        postback_deduplicator=InMemoryPostbackDeduplicator(
            postback_ttl_minutes=postback_ttl_minutes,
            max_records=max_records,
        ),
    )


def create_event_dispatcher(
    config: dict[str, Any],
    stores: SurveyStores | None = None,
    flow_graph: FlowGraphStoreProtocol | None = None,
    profile_resolver: ProfileResolver | None = None,
) -> EventDispatcher:
    survey_conf = config.get("survey", {})
    stores = stores or create_survey_stores(config)
    flow_graph = flow_graph or create_flow_graph_store(config)
    if profile_resolver is None:
        profile_resolver = create_profile_resolver(config)
    keywords = survey_conf.get("trigger_keywords")
    return EventDispatcher(
        flow_graph=flow_graph,
        session_store=stores.session_store,
        rate_limiter=stores.rate_limiter,
        postback_deduplicator=stores.postback_deduplicator,
        profile_resolver=profile_resolver,
        trigger_keywords=keywords if isinstance(keywords, list) else DEFAULT_TRIGGER_KEYWORDS,
        start_action=str(survey_conf.get("start_action", START_ACTION) or START_ACTION),
        restart_action=str(survey_conf.get("restart_action", RESTART_ACTION) or RESTART_ACTION),
    )


def create_profile_resolver(config: dict[str, Any]) -> ProfileResolver:
    line_conf = config.get("line_messaging", {})
    placeholder = str(config.get("survey", {}).get("placeholder_name", "") or DEFAULT_PLACEHOLDER_NAME)
    token = str(line_conf.get("channel_access_token", "") or "").strip()
    client = None
    if token:
        client = LineProfileClient(
            channel_access_token=token,
            api_base_url=str(line_conf.get("api_base_url", "https://api.line.me")),
            timeout_sec=float(line_conf.get("timeout_sec", 10)),
        )
    return ProfileResolver(client, placeholder_name=placeholder)


def _as_optional_str(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
