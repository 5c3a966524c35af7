from __future__ import annotations

from foodcrm import events
from foodcrm.core.context import reset_correlation_id, set_correlation_id
from foodcrm.core.events import InProcessEventBus, InternalEvent, event_bus


def test_pattern_subscription_matches_closed_stages() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def handler(event: InternalEvent) -> None:
        seen.append(event.name)

    bus.subscribe("crm.opportunity.closed_*", handler)
    bus.publish("crm.opportunity.closed_won", {})
    bus.publish("crm.opportunity.closed_lost", {})
    bus.publish("crm.opportunity.stage_changed", {})

    assert seen == ["crm.opportunity.closed_won", "crm.opportunity.closed_lost"]


def test_handler_registered_under_two_matching_patterns_runs_once() -> None:
    bus = InProcessEventBus()
    calls: list[str] = []

    def handler(event: InternalEvent) -> None:
        calls.append(event.name)

    bus.subscribe("authz.role_assigned", handler)
    bus.subscribe("authz.*", handler)
    bus.publish("authz.role_assigned", {"user_id": "u-1"})

    assert calls == ["authz.role_assigned"]

    bus.unsubscribe("authz.*", handler)
    bus.unsubscribe("authz.role_assigned", handler)
    bus.publish("authz.role_assigned", {})
    assert calls == ["authz.role_assigned"]


def test_emit_builds_envelope_with_ambient_correlation_id() -> None:
    received: list[InternalEvent] = []

    def handler(event: InternalEvent) -> None:
        received.append(event)

    event_bus.subscribe("crm.test.emitted", handler)
    token = set_correlation_id("evt-corr-9")
    try:
        envelope = events.emit("crm.test.emitted", actor_user_id="rep-7", payload={"contact_id": "c-1"})
    finally:
        reset_correlation_id(token)
        event_bus.unsubscribe("crm.test.emitted", handler)

    assert envelope["event_type"] == "crm.test.emitted"
    assert envelope["actor_user_id"] == "rep-7"
    assert envelope["correlation_id"] == "evt-corr-9"
    assert envelope["payload"] == {"contact_id": "c-1"}
    assert envelope["event_id"] and envelope["occurred_at"]
    assert envelope in events.events_of_type("crm.test.emitted")
    assert [event.payload for event in received] == [envelope]
