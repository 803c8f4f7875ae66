import pytest

from herald.config import DispatchConfig
from herald.endpoints.base import Notification
from herald.models.enums import JobStatus
from herald.services.dispatcher import DeliveryDispatcher, Outcome, aggregate_outcomes
from herald.utils.errors import DeliveryCancelled, PermanentDeliveryError, TransientDeliveryError


def resolve(registry, *urls):
    endpoints, errors = registry.resolve_all(urls)
    assert not errors
    return endpoints


async def test_all_endpoints_receive_notification(registry, dispatcher, sent):
    endpoints = resolve(registry, "fake://a", "fake://b", "fake://c")
    outcomes = await dispatcher.dispatch(Notification(title="t", body="hello"), endpoints)

    assert [outcome.service_url for outcome in outcomes] == ["fake://a", "fake://b", "fake://c"]
    assert all(outcome.success for outcome in outcomes)
    assert sorted(name for name, _ in sent) == ["a", "b", "c"]


async def test_failures_are_classified(registry, dispatcher):
    endpoints = resolve(registry, "fake://ok", "fake://flaky?fail=transient", "fake://bad?fail=permanent")
    outcomes = await dispatcher.dispatch(Notification(title="t", body="b"), endpoints)

    ok, flaky, bad = outcomes
    assert ok.success and ok.error is None
    assert isinstance(flaky.error, TransientDeliveryError)
    assert isinstance(bad.error, PermanentDeliveryError)
    assert flaky.error_message == "flaky unavailable"


async def test_deadline_cancels_slow_endpoint(registry, dispatcher):
    endpoints = resolve(registry, "fake://fast", "fake://slow?delay=2")
    outcomes = await dispatcher.dispatch(Notification(title="t", body="b"), endpoints, deadline=0.2)

    fast, slow = outcomes
    assert fast.success
    assert not slow.success
    assert slow.cancelled
    assert isinstance(slow.error, DeliveryCancelled)
    assert slow.duration < 1


async def test_queued_deliveries_skip_after_deadline(registry, metrics):
    dispatcher = DeliveryDispatcher(DispatchConfig(deadline=0.25, max_workers=1), metrics=metrics)
    endpoints = resolve(registry, "fake://one?delay=0.15", "fake://two?delay=0.15", "fake://three?delay=0.15")
    outcomes = await dispatcher.dispatch(Notification(title="t", body="b"), endpoints)

    assert outcomes[0].success
    assert outcomes[1].cancelled
    assert outcomes[2].cancelled


async def test_body_truncated_to_endpoint_limit(registry, dispatcher, sent):
    endpoints = resolve(registry, "fake://short?limit=10", "fake://long")
    await dispatcher.dispatch(Notification(title="t", body="abcdefghijklmnopqrstuvwxyz"), endpoints)

    bodies = dict((name, notification.body) for name, notification in sent)
    assert bodies["short"] == "abcd [...]"
    assert bodies["long"] == "abcdefghijklmnopqrstuvwxyz"


async def test_no_endpoints(dispatcher):
    assert await dispatcher.dispatch(Notification(title="t", body="b"), []) == []


async def test_active_deliveries_gauge_returns_to_zero(registry, dispatcher, metrics):
    await dispatcher.dispatch(Notification(title="t", body="b"), resolve(registry, "fake://a", "fake://b"))
    assert metrics.gauge_value("active_deliveries") == 0


def outcome(ok, name="svc"):
    return Outcome(name, f"fake://{name}", success=ok, error=None if ok else TransientDeliveryError(f"{name} down"))


def test_aggregate_all_succeed():
    assert aggregate_outcomes([outcome(True), outcome(True)], 0, 3) == (JobStatus.COMPLETED, "")


def test_aggregate_partial_success_is_terminal():
    outcomes = [outcome(True, "a"), outcome(True, "b"), outcome(False, "c")]
    status, message = aggregate_outcomes(outcomes, 0, 3)
    assert status == JobStatus.COMPLETED
    assert message.startswith("Partial success: 1/3 services failed")
    assert "c down" in message


def test_aggregate_all_fail_with_retries_left():
    status, message = aggregate_outcomes([outcome(False, "a"), outcome(False, "b")], 1, 3)
    assert status == JobStatus.RETRYING
    assert message.startswith("All services failed")


def test_aggregate_all_fail_without_retries():
    status, _ = aggregate_outcomes([outcome(False)], 3, 3)
    assert status == JobStatus.FAILED


def test_aggregate_empty_counts_as_failure():
    assert aggregate_outcomes([], 0, 3) == (JobStatus.RETRYING, "No deliverable services")
    assert aggregate_outcomes([], 0, 0) == (JobStatus.FAILED, "No deliverable services")
