import asyncio
import pytest
from app.integrations.base import InvalidUpstreamResponse, UpstreamAPIError, UpstreamNotFoundError
from app.integrations.ortto import (
    CALENDAR_ENDPOINT,
    CAMPAIGN_ENDPOINT,
    REPORTS_ENDPOINT,
    OrttoClient,
    categorize_asset,
    map_performance,
)
from app.jobs.queue import UpstreamRequestQueue
from app.models.db.enums import ReportKind
from app.models.domain import CAMPAIGN_COUNTERS, ReportItem
from app.utils.ratelimiter import UpstreamRateLimiter


class TickClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeTransport:
    """Replaces OrttoClient._post; answers per endpoint and records every call."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.responses: dict[str, object] = {}

    async def __call__(self, endpoint, body):
        self.calls.append((endpoint, body))
        await asyncio.sleep(0)
        response = self.responses.get(endpoint)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(body)
        return response

    def count(self, endpoint):
        return sum(1 for e, _ in self.calls if e == endpoint)


@pytest.fixture()
def tick():
    return TickClock()


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
async def ortto(tick, transport, monkeypatch):
    limiter = UpstreamRateLimiter(min_interval=0, max_requests=1000, window_seconds=60)
    client = OrttoClient(
        api_key="test-key",
        base_url="https://ortto.example",
        queue=UpstreamRequestQueue(limiter),
        cache_ttl_seconds=600,
        clock=tick,
    )
    monkeypatch.setattr(client, "_post", transport)
    yield client
    await client.close()


def _campaign_response(name="Spring Sale", **performance):
    return {"campaign_name": name, "reports": {"performance": performance}}


def test_map_performance_renames_ortto_fields():
    counters = map_performance(ReportKind.CAMPAIGN, {"opens": 10, "bounced": 3, "unsubscribed": 2, "spam": 1, "sent": 100})
    assert counters["opens"] == 10
    assert counters["bounces"] == 3
    assert counters["unsubscribes"] == 2
    assert counters["spam_reports"] == 1
    assert counters["total_recipients"] == 100
    assert set(counters) == set(CAMPAIGN_COUNTERS)


def test_map_performance_journey_audience_is_entered():
    counters = map_performance(ReportKind.JOURNEY, {"entered": 40, "sent": 999, "revenue": 12.5, "opens": "n/a"})
    assert counters["total_recipients"] == 40
    assert counters["revenue"] == 12.5
    assert counters["opens"] == 0


def test_categorize_asset():
    assert categorize_asset({"id": "a", "name": "Welcome Journey"})["type"] == "journey"
    assert categorize_asset({"id": "b", "type": "journey", "name": "Flow"})["type"] == "journey"
    campaign = categorize_asset({"id": "c", "name": ""})
    assert campaign["type"] == "campaign"
    assert campaign["name"] == "Unnamed campaign"
    assert campaign["status"] == "active"


async def test_fetch_report_maps_campaign(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = _campaign_response(opens=12, clicks=3, sent=50)
    record = await ortto.fetch_report(ReportItem("c1", ReportKind.CAMPAIGN), "all-time")
    assert record.name == "Spring Sale"
    assert record.counters["opens"] == 12
    assert record.counters["total_recipients"] == 50
    assert not record.is_placeholder
    endpoint, body = transport.calls[0]
    assert endpoint == REPORTS_ENDPOINT
    # all-time is Ortto's default and is not sent
    assert body == {"campaign_id": "c1"}


async def test_fetch_report_sends_explicit_timeframe(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = _campaign_response(opens=1)
    await ortto.fetch_report(ReportItem("c1", ReportKind.CAMPAIGN), "last-30-days")
    assert transport.calls[0][1] == {"campaign_id": "c1", "timeframe": "last-30-days"}


async def test_concurrent_fetches_share_one_request(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = _campaign_response(opens=5)
    item = ReportItem("c1", ReportKind.CAMPAIGN)
    records = await asyncio.gather(*(ortto.fetch_report(item, "all-time") for _ in range(5)))
    assert transport.count(REPORTS_ENDPOINT) == 1
    assert all(r == records[0] for r in records)


async def test_results_cached_until_ttl(ortto, transport, tick):
    transport.responses[REPORTS_ENDPOINT] = _campaign_response(opens=5)
    item = ReportItem("c1", ReportKind.CAMPAIGN)
    await ortto.fetch_report(item, "all-time")
    tick.now = 599
    await ortto.fetch_report(item, "all-time")
    assert transport.count(REPORTS_ENDPOINT) == 1
    tick.now = 601
    await ortto.fetch_report(item, "all-time")
    assert transport.count(REPORTS_ENDPOINT) == 2


async def test_timeframes_are_cached_separately(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = _campaign_response(opens=5)
    item = ReportItem("c1", ReportKind.CAMPAIGN)
    await ortto.fetch_report(item, "all-time")
    await ortto.fetch_report(item, "last-7-days")
    assert transport.count(REPORTS_ENDPOINT) == 2


async def test_not_found_yields_zeroed_record(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = UpstreamNotFoundError()
    record = await ortto.fetch_report(ReportItem("c404", ReportKind.CAMPAIGN), "all-time")
    assert record.name == "Campaign c404"
    assert set(record.counters.values()) == {0}


async def test_failed_fetch_is_not_cached(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = UpstreamAPIError("boom", status_code=500)
    item = ReportItem("c1", ReportKind.CAMPAIGN)
    with pytest.raises(UpstreamAPIError):
        await ortto.fetch_report(item, "all-time")
    transport.responses[REPORTS_ENDPOINT] = _campaign_response(opens=2)
    record = await ortto.fetch_report(item, "all-time")
    assert record.counters["opens"] == 2


async def test_invalid_response_shape_raises(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = {"unexpected": True}
    with pytest.raises(InvalidUpstreamResponse):
        await ortto.fetch_report(ReportItem("c1", ReportKind.CAMPAIGN), "all-time")


async def test_journey_name_from_campaign_lookup(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = {"reports": {"performance": {"entered": 40}}}
    transport.responses[CAMPAIGN_ENDPOINT] = {"campaign": {"name": "Welcome flow", "type": "journey"}}
    record = await ortto.fetch_report(ReportItem("j1", ReportKind.JOURNEY), "all-time")
    assert record.name == "Welcome flow"
    assert record.counters["total_recipients"] == 40


async def test_journey_name_falls_back_to_calendar_then_default(ortto, transport):
    transport.responses[REPORTS_ENDPOINT] = {"reports": {"performance": {}}}
    transport.responses[CAMPAIGN_ENDPOINT] = UpstreamAPIError("nope", status_code=400)
    transport.responses[CALENDAR_ENDPOINT] = {"campaigns": [{"id": "j1", "name": "Onboarding"}]}
    record = await ortto.fetch_report(ReportItem("j1", ReportKind.JOURNEY), "all-time")
    assert record.name == "Onboarding"

    record = await ortto.fetch_report(ReportItem("j2", ReportKind.JOURNEY), "all-time")
    assert record.name == "Journey j2"


async def test_prefetch_catalog_names_reports(ortto, transport):
    transport.responses[CALENDAR_ENDPOINT] = {"campaigns": [{"id": "c1", "name": "Newsletter"}, {"id": "c2"}]}
    transport.responses[REPORTS_ENDPOINT] = {"reports": {"performance": {"opens": 1}}}
    assert await ortto.prefetch_catalog() == 1
    record = await ortto.fetch_report(ReportItem("c1", ReportKind.CAMPAIGN), "all-time")
    assert record.name == "Newsletter"


async def test_categorized_assets_are_cached(ortto, transport):
    transport.responses[CALENDAR_ENDPOINT] = {
        "campaigns": [{"id": "c1", "name": "Newsletter"}, {"id": "j1", "name": "Welcome journey"}]
    }
    assets = await ortto.get_categorized_assets()
    assert [a["id"] for a in assets["campaigns"]] == ["c1"]
    assert [a["id"] for a in assets["journeys"]] == ["j1"]
    assert len(assets["all"]) == 2
    await ortto.get_categorized_assets()
    assert transport.count(CALENDAR_ENDPOINT) == 1
    await ortto.get_categorized_assets(refresh=True)
    assert transport.count(CALENDAR_ENDPOINT) == 2


async def test_list_campaigns_requests_whole_year(ortto, transport):
    transport.responses[CALENDAR_ENDPOINT] = {"campaigns": None}
    result = await ortto.list_campaigns(2024)
    assert result == {"assets": []}
    body = transport.calls[0][1]
    assert body["start"] == {"year": 2024, "month": 1, "day": 1}
    assert body["end"] == {"year": 2024, "month": 12, "day": 31}


async def test_missing_api_key_is_an_upstream_error():
    client = OrttoClient(api_key="", queue=UpstreamRequestQueue(UpstreamRateLimiter(min_interval=0, max_requests=10, window_seconds=60)))
    with pytest.raises(UpstreamAPIError):
        await client._post(REPORTS_ENDPOINT, {"campaign_id": "c1"})
    assert client.snapshot()["configured"] is False
    await client.close()
