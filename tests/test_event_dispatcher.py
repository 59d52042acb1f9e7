from __future__ import annotations

import threading
import unittest
from datetime import datetime, timedelta, timezone
from typing import Any

from core.enums import DispatchOutcome, EventType
from core.models import DispatchResult, FlowChoice, FlowStep, InboundEvent
from flow.graph_store import InMemoryFlowGraphStore
from flow.loader import load_flow_graph
from line_messaging.postback_data import build_postback_data
from line_messaging.profile_client import ProfileResolver
from survey.dispatcher import EventDispatcher
from survey.postback_dedupe import InMemoryPostbackDeduplicator
from survey.rate_limiter import InMemoryRateLimiter
from survey.session_store import InMemorySessionStore

BASE = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class _DummyProfileClient:
    def __init__(self, name: str = "山田", fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.calls: list[str] = []

    def get_display_name(self, user_id: str) -> str:
        self.calls.append(user_id)
        if self.fail:
            raise RuntimeError("profile api down")
        return self.name


class _BlockingFlowGraph:
    """Blocks the first ``get_step`` call until released."""

    def __init__(self, inner: InMemoryFlowGraphStore) -> None:
        self.inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()
        self._armed = True

    @property
    def root_step_id(self) -> str:
        return self.inner.root_step_id

    def get_step(self, step_id: str) -> FlowStep | None:
        if self._armed:
            self._armed = False
            self.entered.set()
            self.release.wait(5)
        return self.inner.get_step(step_id)

    def list_choices(self, step_id: str) -> list[FlowChoice]:
        return self.inner.list_choices(step_id)


class _FailingAdvanceSessionStore(InMemorySessionStore):
    def advance(self, user_id: str, next_step_id: str) -> None:
        raise RuntimeError("store unavailable")


def _build_dispatcher(**overrides: Any) -> EventDispatcher:
    kwargs: dict[str, Any] = {
        "flow_graph": load_flow_graph(None),
        "session_store": InMemorySessionStore(),
        "rate_limiter": InMemoryRateLimiter(window_sec=10, max_events=100),
        "postback_deduplicator": InMemoryPostbackDeduplicator(),
        "profile_resolver": None,
        "clock": lambda: BASE,
    }
    kwargs.update(overrides)
    return EventDispatcher(**kwargs)


def _postback(user_id: str, action: str, value: str | None, next_step_id: str | None) -> InboundEvent:
    return InboundEvent(
        event_type=EventType.POSTBACK,
        user_id=user_id,
        reply_token="reply-token",
        postback_data=build_postback_data(action, value, next_step_id),
    )


def _message(user_id: str, text: str | None) -> InboundEvent:
    return InboundEvent(event_type=EventType.MESSAGE, user_id=user_id, reply_token="reply-token", text=text)


def _follow(user_id: str) -> InboundEvent:
    return InboundEvent(event_type=EventType.FOLLOW, user_id=user_id, reply_token="reply-token")


def _step_id(result: DispatchResult) -> str | None:
    return result.step.id if result.step is not None else None


class EventDispatcherScenarioTest(unittest.TestCase):
    def test_follow_answer_duplicate_and_stale(self) -> None:
        dispatcher = _build_dispatcher()
        sessions = dispatcher.session_store

        followed = dispatcher.dispatch(_follow("U1"), now=BASE)
        self.assertEqual(followed.outcome, DispatchOutcome.RENDER)
        self.assertEqual(_step_id(followed), "welcome")

        answer = _postback("U1", "area", "tokyo", "business_status")
        accepted = dispatcher.dispatch(answer, now=BASE + timedelta(seconds=1))
        self.assertEqual(accepted.outcome, DispatchOutcome.RENDER)
        self.assertEqual(_step_id(accepted), "business_status")
        session = sessions.get("U1")
        assert session is not None
        self.assertEqual(session.answers, {"area": "tokyo"})

        retried = dispatcher.dispatch(answer, now=BASE + timedelta(seconds=2))
        self.assertEqual(retried.outcome, DispatchOutcome.DUPLICATE)
        self.assertTrue(retried.should_reply)
        self.assertIsNone(retried.step)

        skipped = dispatcher.dispatch(
            _postback("U1", "profit", "high", "result_2000"),
            now=BASE + timedelta(seconds=3),
        )
        self.assertEqual(skipped.outcome, DispatchOutcome.STALE)
        session = sessions.get("U1")
        assert session is not None
        self.assertEqual(session.current_step_id, "business_status")
        self.assertEqual(session.answers, {"area": "tokyo"})
        self.assertFalse(session.in_flight)


class EventDispatcherTest(unittest.TestCase):
    def test_replayed_postback_transitions_once(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_follow("U1"), now=BASE)
        dispatcher.dispatch(_postback("U1", "start", None, "area"), now=BASE)
        event = _postback("U1", "area", "saitama", "business_status")
        outcomes = [dispatcher.dispatch(event, now=BASE + timedelta(seconds=i)).outcome for i in range(5)]
        self.assertEqual(outcomes.count(DispatchOutcome.RENDER), 1)
        self.assertEqual(outcomes.count(DispatchOutcome.DUPLICATE), 4)

    def test_rate_limited_event_does_not_mutate(self) -> None:
        dispatcher = _build_dispatcher(rate_limiter=InMemoryRateLimiter(window_sec=10, max_events=3))
        dispatcher.dispatch(_follow("U1"), now=BASE)
        dispatcher.dispatch(_message("U1", "hello"), now=BASE)
        dispatcher.dispatch(_message("U1", "hello"), now=BASE)
        throttled = dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
        self.assertEqual(throttled.outcome, DispatchOutcome.THROTTLED)
        self.assertTrue(throttled.should_reply)
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.current_step_id, "welcome")
        self.assertEqual(session.answers, {})

        later = dispatcher.dispatch(
            _postback("U1", "area", "tokyo", "business_status"),
            now=BASE + timedelta(seconds=11),
        )
        self.assertEqual(later.outcome, DispatchOutcome.RENDER)

    def test_expired_session_starts_over(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
        result = dispatcher.dispatch(_message("U1", "hello"), now=BASE + timedelta(minutes=31))
        self.assertEqual(_step_id(result), "welcome")
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.answers, {})

    def test_skipping_ahead_is_stale(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_postback("U1", "start", None, "area"), now=BASE)
        result = dispatcher.dispatch(_postback("U1", "employees", "inheritable", "employees"), now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.STALE)
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.current_step_id, "area")

    def test_restart_is_accepted_from_every_step(self) -> None:
        graph = load_flow_graph(None)
        for step_id in graph.step_ids():
            with self.subTest(step_id=step_id):
                dispatcher = _build_dispatcher(flow_graph=graph)
                dispatcher.session_store.get_or_create("U1", BASE)
                dispatcher.session_store.advance("U1", step_id)
                dispatcher.session_store.record_answer("U1", "area", "tokyo")
                result = dispatcher.dispatch(_postback("U1", "restart", None, "welcome"), now=BASE)
                self.assertEqual(_step_id(result), "welcome")
                session = dispatcher.session_store.get("U1")
                assert session is not None
                self.assertEqual(session.answers, {})
                self.assertEqual(session.current_step_id, "welcome")

    def test_each_rendered_restart_button_is_accepted(self) -> None:
        dispatcher = _build_dispatcher()
        first = dispatcher.dispatch(_postback("U1", "restart", "a1", "welcome"), now=BASE)
        second = dispatcher.dispatch(_postback("U1", "restart", "b2", "welcome"), now=BASE + timedelta(seconds=1))
        self.assertEqual(first.outcome, DispatchOutcome.RENDER)
        self.assertEqual(second.outcome, DispatchOutcome.RENDER)

    def test_redelivered_restart_keeps_new_answers(self) -> None:
        dispatcher = _build_dispatcher()
        restart = _postback("U1", "restart", "a1", "welcome")
        self.assertEqual(dispatcher.dispatch(restart, now=BASE).outcome, DispatchOutcome.RENDER)
        dispatcher.dispatch(_postback("U1", "start", None, "area"), now=BASE + timedelta(seconds=1))
        dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE + timedelta(seconds=2))

        replayed = dispatcher.dispatch(restart, now=BASE + timedelta(seconds=5))
        self.assertEqual(replayed.outcome, DispatchOutcome.DUPLICATE)
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.current_step_id, "business_status")
        self.assertEqual(session.answers, {"area": "tokyo"})

    def test_same_answer_after_restart_is_accepted(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_postback("U1", "start", None, "area"), now=BASE)
        answer = _postback("U1", "area", "tokyo", "business_status")
        self.assertEqual(dispatcher.dispatch(answer, now=BASE).outcome, DispatchOutcome.RENDER)
        dispatcher.dispatch(_postback("U1", "restart", None, "welcome"), now=BASE)
        dispatcher.dispatch(_postback("U1", "start", None, "area"), now=BASE)
        self.assertEqual(dispatcher.dispatch(answer, now=BASE).outcome, DispatchOutcome.RENDER)

    def test_start_button_moves_to_first_question(self) -> None:
        dispatcher = _build_dispatcher()
        result = dispatcher.dispatch(_postback("U1", "start", None, "area"), now=BASE)
        self.assertEqual(_step_id(result), "area")

    def test_old_start_button_is_stale_once_survey_moved_on(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_postback("U1", "start", None, "area"), now=BASE)
        dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
        result = dispatcher.dispatch(_postback("U1", "start", "go", "area"), now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.STALE)

    def test_trigger_keyword_restarts(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
        result = dispatcher.dispatch(_message("U1", "無料診断をお願いします"), now=BASE)
        self.assertEqual(_step_id(result), "welcome")
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.answers, {})

    def test_other_text_rerenders_current_step(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
        result = dispatcher.dispatch(_message("U1", "こんにちは"), now=BASE)
        self.assertEqual(_step_id(result), "business_status")
        sticker = dispatcher.dispatch(_message("U1", None), now=BASE)
        self.assertEqual(_step_id(sticker), "business_status")

    def test_missing_current_step_falls_back_to_root(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.session_store.get_or_create("U1", BASE)
        dispatcher.session_store.advance("U1", "deleted_step")
        with self.assertLogs("survey.dispatcher", level="WARNING"):
            result = dispatcher.dispatch(_message("U1", "hello"), now=BASE)
        self.assertEqual(_step_id(result), "welcome")

    def test_postback_on_missing_current_step_falls_back_to_root(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.session_store.get_or_create("U1", BASE)
        dispatcher.session_store.advance("U1", "deleted_step")
        dispatcher.session_store.record_answer("U1", "area", "tokyo")
        with self.assertLogs("survey.dispatcher", level="WARNING") as logs:
            result = dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.RENDER)
        self.assertEqual(_step_id(result), "welcome")
        self.assertIn("flow-step-missing", logs.output[0])
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.current_step_id, "welcome")
        self.assertEqual(session.answers, {})
        self.assertFalse(session.in_flight)

    def test_missing_target_step_falls_back_to_root(self) -> None:
        graph = InMemoryFlowGraphStore(
            {
                "welcome": FlowStep(
                    id="welcome",
                    title="t",
                    message="m",
                    choices=(FlowChoice("go", "pick", "a", "removed"),),
                ),
            },
        )
        dispatcher = _build_dispatcher(flow_graph=graph)
        with self.assertLogs("survey.dispatcher", level="WARNING"):
            result = dispatcher.dispatch(_postback("U1", "pick", "a", "removed"), now=BASE)
        self.assertEqual(_step_id(result), "welcome")
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.current_step_id, "welcome")
        self.assertEqual(session.answers, {})

    def test_malformed_postback_is_silent(self) -> None:
        dispatcher = _build_dispatcher()
        event = InboundEvent(event_type=EventType.POSTBACK, user_id="U1", postback_data="a=ok&r=1")
        result = dispatcher.dispatch(event, now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.MALFORMED)
        self.assertFalse(result.should_reply)

    def test_unknown_action_is_ignored(self) -> None:
        dispatcher = _build_dispatcher()
        result = dispatcher.dispatch(_postback("U1", "memo", "x", None), now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.IGNORED)
        self.assertFalse(result.should_reply)

    def test_unfollow_drops_session(self) -> None:
        dispatcher = _build_dispatcher()
        dispatcher.dispatch(_follow("U1"), now=BASE)
        event = InboundEvent(event_type=EventType.UNFOLLOW, user_id="U1")
        result = dispatcher.dispatch(event, now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.IGNORED)
        self.assertIsNone(dispatcher.session_store.get("U1"))

    def test_unexpected_error_returns_notice_and_releases_guard(self) -> None:
        sessions = _FailingAdvanceSessionStore()
        dispatcher = _build_dispatcher(session_store=sessions)
        with self.assertLogs("survey.dispatcher", level="ERROR"):
            result = dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.ERROR)
        self.assertTrue(result.should_reply)
        self.assertTrue(sessions.try_set_in_flight("U1"))

    def test_display_name_is_resolved_once(self) -> None:
        client = _DummyProfileClient(name="山田")
        dispatcher = _build_dispatcher(profile_resolver=ProfileResolver(client))
        first = dispatcher.dispatch(_follow("U1"), now=BASE)
        dispatcher.dispatch(_message("U1", "hello"), now=BASE)
        self.assertEqual(first.display_name, "山田")
        self.assertEqual(client.calls, ["U1"])
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.display_name, "山田")

    def test_display_name_lives_with_the_session(self) -> None:
        client = _DummyProfileClient(name="山田")
        dispatcher = _build_dispatcher(profile_resolver=ProfileResolver(client))
        dispatcher.dispatch(_follow("U1"), now=BASE)
        dispatcher.session_store.sweep(BASE + timedelta(hours=1))
        dispatcher.dispatch(_message("U1", "hello"), now=BASE + timedelta(hours=1))
        self.assertEqual(client.calls, ["U1", "U1"])

    def test_profile_failure_uses_placeholder(self) -> None:
        client = _DummyProfileClient(fail=True)
        dispatcher = _build_dispatcher(profile_resolver=ProfileResolver(client, placeholder_name="お客様"))
        with self.assertLogs("line_messaging.profile_client", level="WARNING"):
            result = dispatcher.dispatch(_follow("U1"), now=BASE)
        self.assertEqual(result.outcome, DispatchOutcome.RENDER)
        self.assertEqual(result.display_name, "お客様")
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertIsNone(session.display_name)


class EventDispatcherConcurrencyTest(unittest.TestCase):
    def test_second_postback_during_first_is_dropped(self) -> None:
        graph = _BlockingFlowGraph(load_flow_graph(None))
        dispatcher = _build_dispatcher(flow_graph=graph)
        results: list[DispatchResult] = []

        worker = threading.Thread(
            target=lambda: results.append(
                dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
            )
        )
        worker.start()
        self.assertTrue(graph.entered.wait(5))

        second = dispatcher.dispatch(_postback("U1", "area", "chiba", "business_status"), now=BASE)
        graph.release.set()
        worker.join(5)

        self.assertEqual(second.outcome, DispatchOutcome.IN_FLIGHT)
        self.assertFalse(second.should_reply)
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].outcome, DispatchOutcome.RENDER)
        session = dispatcher.session_store.get("U1")
        assert session is not None
        self.assertEqual(session.answers, {"area": "tokyo"})
        self.assertFalse(session.in_flight)

    def test_different_users_do_not_block_each_other(self) -> None:
        graph = _BlockingFlowGraph(load_flow_graph(None))
        dispatcher = _build_dispatcher(flow_graph=graph)
        results: list[DispatchResult] = []

        worker = threading.Thread(
            target=lambda: results.append(
                dispatcher.dispatch(_postback("U1", "area", "tokyo", "business_status"), now=BASE)
            )
        )
        worker.start()
        self.assertTrue(graph.entered.wait(5))

        other = dispatcher.dispatch(_postback("U2", "area", "chiba", "business_status"), now=BASE)
        graph.release.set()
        worker.join(5)

        self.assertEqual(other.outcome, DispatchOutcome.RENDER)
        self.assertEqual(results[0].outcome, DispatchOutcome.RENDER)


if __name__ == "__main__":
    unittest.main()
