"""Tests for the finding router."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import PASSWORD_REF, make_finding_event
from piiwatch.core.events import Event
from piiwatch.core.models import BasicAuthorization, Destination
from piiwatch.execution.retry import ExponentialBackoff
from piiwatch.routing.dispatch import DeliveryFailureLog, WebhookDispatcher
from piiwatch.routing.render import AlertRenderer
from piiwatch.routing.router import FindingRouter
from piiwatch.routing.rules import finding_rule

DEST = Destination(
    name="Teams-Destination-test",
    endpoint="https://hooks.example.com/teams",
    authorization=BasicAuthorization("fake-teams-user", PASSWORD_REF),
)


@pytest.fixture
def received():
    return []


@pytest.fixture
def router(resolver, async_sleep, registry, received):
    def handler(request):
        received.append(request)
        return httpx.Response(200)

    dispatcher = WebhookDispatcher(
        resolver,
        failures=DeliveryFailureLog(":memory:"),
        retry=ExponentialBackoff(max_attempts=2, jitter=False),
        transport=httpx.MockTransport(handler),
        sleep=async_sleep,
        registry=registry,
    )
    renderer = AlertRenderer(region="us-east-1", issue_board_url="https://issues.example.com/board")
    return FindingRouter([finding_rule("findings", DEST)], renderer, dispatcher, registry=registry)


class TestFindingRouter:
    @pytest.mark.asyncio
    async def test_routes_finding_from_bus(self, router, bus, received):
        await router.subscribe(bus)
        await bus.publish(make_finding_event(job_id="job-42"))
        assert len(received) == 1
        assert b"Finding for job job-42" in received[0].content

    @pytest.mark.asyncio
    async def test_handle_returns_results(self, router):
        [result] = await router.handle(make_finding_event())
        assert result.success
        assert result.destination == DEST.name

    @pytest.mark.asyncio
    async def test_unmatched_event_is_ignored(self, router, received):
        assert await router.handle(Event(event_type="Finding", source="someone-else")) == []
        assert received == []

    @pytest.mark.asyncio
    async def test_render_error_is_counted_and_skipped(self, router, registry, received):
        event = make_finding_event()
        del event.payload["classificationDetails"]["jobId"]

        assert await router.handle(event) == []

        assert received == []
        assert registry.value("render_errors_total") == 1.0

    @pytest.mark.asyncio
    async def test_unsubscribe(self, router, bus, received):
        await router.subscribe(bus)
        await router.unsubscribe(bus)
        await bus.publish(make_finding_event())
        assert received == []
        assert bus.subscription_count == 0

    @pytest.mark.asyncio
    async def test_each_matching_rule_is_dispatched(self, registry):
        second = Destination(name="second", endpoint="https://hooks.example.com/other", format="teams")
        dispatcher = MagicMock(spec=WebhookDispatcher)
        dispatcher.deliver = AsyncMock(return_value="delivered")
        renderer = AlertRenderer(region="us-east-1", issue_board_url="https://issues.example.com/board")
        router = FindingRouter(
            [finding_rule("findings", DEST), finding_rule("second", second)], renderer, dispatcher, registry=registry
        )

        results = await router.handle(make_finding_event())

        assert results == ["delivered", "delivered"]
        destinations = [call.args[0] for call in dispatcher.deliver.await_args_list]
        formats = [call.args[1].format for call in dispatcher.deliver.await_args_list]
        assert destinations == [DEST, second]
        assert formats == ["generic", "teams"]
