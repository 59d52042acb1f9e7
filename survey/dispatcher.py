from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, Iterator

from core.enums import DispatchOutcome, EventType, PostbackOutcome
from core.models import (
    AnswerAction,
    DispatchResult,
    FlowStep,
    InboundEvent,
    PostbackAction,
    RestartAction,
    Session,
    StartAction,
    utc_now,
)
from flow.graph_store import FlowGraphStoreProtocol
from flow.transitions import can_transition
from line_messaging.postback_data import (
    RESTART_ACTION,
    START_ACTION,
    MalformedPostbackError,
    parse_postback_data,
    postback_fingerprint,
)
from line_messaging.profile_client import ProfileResolver
from survey.store_interface import (
    PostbackDeduplicatorProtocol,
    RateLimiterProtocol,
    SessionNotFoundError,
    SessionStoreProtocol,
)

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_KEYWORDS = (
    "スタート",
    "開始",
    "はじめ",
    "診断",
    "無料",
    "最初から",
    "start",
)


class EventDispatcher:
    """Runs one inbound event through throttle, session, replay and transition checks.

    Each ``dispatch`` call returns a ``DispatchResult``: a step to render, an
    outcome that maps to a notice, or a silent outcome. Exceptions never
    escape; the webhook must be acknowledged whatever happens here.
    """

    def __init__(
        self,
        flow_graph: FlowGraphStoreProtocol,
        session_store: SessionStoreProtocol,
        rate_limiter: RateLimiterProtocol,
        postback_deduplicator: PostbackDeduplicatorProtocol,
        profile_resolver: ProfileResolver | None = None,
        trigger_keywords: Iterable[str] = DEFAULT_TRIGGER_KEYWORDS,
        start_action: str = START_ACTION,
        restart_action: str = RESTART_ACTION,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.flow_graph = flow_graph
        self.session_store = session_store
        self.rate_limiter = rate_limiter
        self.postback_deduplicator = postback_deduplicator
        self.profile_resolver = profile_resolver
        self.trigger_keywords = tuple(
            keyword.strip().lower() for keyword in trigger_keywords if str(keyword or "").strip()
        )
        self.start_action = start_action
        self.restart_action = restart_action
        self.clock = clock

    def dispatch(self, event: InboundEvent, now: datetime | None = None) -> DispatchResult:
        now = now or self.clock()
        user_id = event.user_id
        step_id = ""
        try:
            if not self.rate_limiter.allow(user_id, now):
                logger.info("event-throttled user_id=%s event_type=%s", user_id, event.event_type.value)
                return DispatchResult(outcome=DispatchOutcome.THROTTLED, user_id=user_id)

            if event.event_type == EventType.UNFOLLOW:
                self.session_store.delete(user_id)
                self.postback_deduplicator.forget(user_id)
                return DispatchResult(outcome=DispatchOutcome.IGNORED, user_id=user_id)

            session = self.session_store.get_or_create(user_id, now)
            step_id = session.current_step_id
            display_name = self._ensure_display_name(session)

            if event.event_type == EventType.POSTBACK:
                return self._handle_postback(event, now, display_name)
            if event.event_type == EventType.FOLLOW:
                return self._handle_follow(user_id, display_name)
            if event.event_type == EventType.MESSAGE:
                return self._handle_message(event, session, display_name)
            return DispatchResult(outcome=DispatchOutcome.IGNORED, user_id=user_id)
        except Exception:  # noqa: BLE001
            logger.exception(
                "dispatch-failed user_id=%s event_type=%s step_id=%s",
                user_id,
                event.event_type.value,
                step_id,
            )
            return DispatchResult(outcome=DispatchOutcome.ERROR, user_id=user_id)

    def _handle_postback(self, event: InboundEvent, now: datetime, display_name: str | None) -> DispatchResult:
        user_id = event.user_id
        data = event.postback_data or ""
        try:
            action = parse_postback_data(data, start_action=self.start_action, restart_action=self.restart_action)
        except MalformedPostbackError as exc:
            logger.warning("postback-malformed user_id=%s error=%s", user_id, exc)
            return DispatchResult(outcome=DispatchOutcome.MALFORMED, user_id=user_id)
        fingerprint = postback_fingerprint(data)

        with self._in_flight(user_id) as acquired:
            if not acquired:
                logger.info("postback-in-flight user_id=%s", user_id)
                return DispatchResult(outcome=DispatchOutcome.IN_FLIGHT, user_id=user_id)

            current_step_id = self._current_step_id(user_id)
            if self.flow_graph.get_step(current_step_id) is None:
                return self._fallback_to_root(user_id, current_step_id, display_name)
            outcome = self.postback_deduplicator.check_and_record(user_id, fingerprint, current_step_id, now)
            if outcome == PostbackOutcome.DUPLICATE:
                logger.info("postback-duplicate user_id=%s step_id=%s", user_id, current_step_id)
                return DispatchResult(outcome=DispatchOutcome.DUPLICATE, user_id=user_id)
            result = self._apply_postback(user_id, current_step_id, action, display_name)
            if result.step is not None and result.step.id == self.flow_graph.root_step_id:
                # a reset forgets the history, so keep this press in it
                self.postback_deduplicator.check_and_record(user_id, fingerprint, result.step.id, now)
            return result

    def _apply_postback(
        self,
        user_id: str,
        current_step_id: str,
        action: PostbackAction,
        display_name: str | None,
    ) -> DispatchResult:
        if isinstance(action, RestartAction):
            return self._restart(user_id, display_name)

        if isinstance(action, StartAction):
            next_step_id = action.next_step_id or self._first_root_target()
            if next_step_id is None:
                return self._restart(user_id, display_name)
            if not can_transition(self.flow_graph, current_step_id, next_step_id, action=self.start_action):
                return self._stale(user_id, current_step_id, next_step_id)
            target = self.flow_graph.get_step(next_step_id)
            if target is None:
                return self._fallback_to_root(user_id, next_step_id, display_name)
            self.session_store.reset(user_id)
            self.session_store.advance(user_id, target.id)
            return self._render(user_id, target, display_name)

        if isinstance(action, AnswerAction):
            if not can_transition(
                self.flow_graph,
                current_step_id,
                action.next_step_id,
                action=action.key,
                restart_action=self.restart_action,
            ):
                return self._stale(user_id, current_step_id, action.next_step_id)
            target = self.flow_graph.get_step(action.next_step_id)
            if target is None:
                return self._fallback_to_root(user_id, action.next_step_id, display_name)
            if action.value is not None:
                self.session_store.record_answer(user_id, action.key, action.value)
            self.session_store.advance(user_id, target.id)
            return self._render(user_id, target, display_name)

        logger.info("postback-unknown-action user_id=%s action=%s", user_id, action.action)
        return DispatchResult(outcome=DispatchOutcome.IGNORED, user_id=user_id)

    def _handle_follow(self, user_id: str, display_name: str | None) -> DispatchResult:
        with self._in_flight(user_id) as acquired:
            if not acquired:
                return DispatchResult(outcome=DispatchOutcome.IN_FLIGHT, user_id=user_id)
            return self._restart(user_id, display_name)

    def _handle_message(self, event: InboundEvent, session: Session, display_name: str | None) -> DispatchResult:
        user_id = event.user_id
        if self._is_trigger(event.text or ""):
            with self._in_flight(user_id) as acquired:
                if not acquired:
                    return DispatchResult(outcome=DispatchOutcome.IN_FLIGHT, user_id=user_id)
                return self._restart(user_id, display_name)

        step = self.flow_graph.get_step(session.current_step_id)
        if step is not None:
            return self._render(user_id, step, display_name)
        with self._in_flight(user_id) as acquired:
            if not acquired:
                return DispatchResult(outcome=DispatchOutcome.IN_FLIGHT, user_id=user_id)
            return self._fallback_to_root(user_id, session.current_step_id, display_name)

    def _restart(self, user_id: str, display_name: str | None) -> DispatchResult:
        self.session_store.reset(user_id)
        self.postback_deduplicator.forget(user_id)
        return self._render(user_id, self._root_step(), display_name)

    def _fallback_to_root(self, user_id: str, missing_step_id: str, display_name: str | None) -> DispatchResult:
        logger.warning("flow-step-missing user_id=%s step_id=%s fallback=root", user_id, missing_step_id)
        return self._restart(user_id, display_name)

    def _stale(self, user_id: str, current_step_id: str, requested_step_id: str) -> DispatchResult:
        logger.info(
            "postback-stale user_id=%s step_id=%s requested=%s",
            user_id,
            current_step_id,
            requested_step_id,
        )
        return DispatchResult(outcome=DispatchOutcome.STALE, user_id=user_id)

    @staticmethod
    def _render(user_id: str, step: FlowStep, display_name: str | None) -> DispatchResult:
        return DispatchResult(
            outcome=DispatchOutcome.RENDER,
            user_id=user_id,
            step=step,
            display_name=display_name,
        )

    @contextmanager
    def _in_flight(self, user_id: str) -> Iterator[bool]:
        acquired = self.session_store.try_set_in_flight(user_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.session_store.clear_in_flight(user_id)

    def _current_step_id(self, user_id: str) -> str:
        session = self.session_store.get(user_id)
        if session is None:
            raise SessionNotFoundError(user_id)
        return session.current_step_id

    def _root_step(self) -> FlowStep:
        root = self.flow_graph.get_step(self.flow_graph.root_step_id)
        if root is None:
            raise LookupError(f"root step {self.flow_graph.root_step_id} is missing from the flow graph")
        return root

    def _first_root_target(self) -> str | None:
        for choice in self.flow_graph.list_choices(self.flow_graph.root_step_id):
            if choice.next_step_id:
                return choice.next_step_id
        return None

    def _is_trigger(self, text: str) -> bool:
        normalized = text.strip().lower()
        if not normalized:
            return False
        return any(keyword in normalized for keyword in self.trigger_keywords)

    def _ensure_display_name(self, session: Session) -> str | None:
        if session.display_name:
            return session.display_name
        if self.profile_resolver is None:
            return None
        name = self.profile_resolver.resolve_display_name(session.user_id)
        if name != self.profile_resolver.placeholder_name:
            self.session_store.set_display_name(session.user_id, name)
        return name
