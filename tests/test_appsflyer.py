import datetime

import pytest

from attribution_relay.services.appsflyer import AppsFlyerError, AppsFlyerEvents
from attribution_relay.utils.events import EventLog


def _service(events=None, config=None):
    return AppsFlyerEvents("af-dev-key", "com.demo.app", events if events is not None else EventLog(), config)


def test_url_and_payload():
    service = _service(config={"settings": {"appsflyer": {"base_url": "https://af.test/inappevent/"}}})
    assert service.url == "https://af.test/inappevent/com.demo.app"

    when = datetime.datetime(2024, 3, 1, 12, 30, 5, 250000, tzinfo=datetime.timezone.utc)
    payload = service.build_payload("af-123", "IDFV-1", "af_purchase", {"af_revenue": 10}, when)
    assert payload == {
        "appsflyer_id": "af-123",
        "customer_user_id": "IDFV-1",
        "eventName": "af_purchase",
        "eventValue": {"af_revenue": 10},
        "eventTime": "2024-03-01T12:30:05.250Z",
    }


async def test_deposit_sends_authenticated_request(outbound):
    events = EventLog()
    status = await _service(events).send_deposit("af-123", "IDFV-1", 99.0, "EUR")

    assert status == 200
    call = outbound.calls[0]
    assert call["url"] == "https://api2.appsflyer.com/inappevent/com.demo.app"
    assert call["headers"]["authentication"] == "af-dev-key"
    assert call["timeout_ms"] == 10000
    assert call["body"]["eventName"] == "af_purchase"
    assert call["body"]["eventValue"]["af_revenue"] == 99.0
    assert call["body"]["eventValue"]["af_currency"] == "EUR"
    assert [e.type for e in events.get_events()] == ["postback"]


async def test_registration_event_name(outbound):
    await _service().send_registration("af-123", "IDFV-1")
    assert outbound.calls[0]["body"]["eventName"] == "af_complete_registration"


async def test_non_2xx_raises_after_logging(outbound):
    outbound.status = 403
    outbound.body = "Forbidden"
    events = EventLog()

    with pytest.raises(AppsFlyerError) as excinfo:
        await _service(events).send_registration("af-123", "IDFV-1")

    assert excinfo.value.status == 403
    assert excinfo.value.body == "Forbidden"
    assert [e.type for e in events.get_events()] == ["postback", "error"]
