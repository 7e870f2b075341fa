import pytest
from sqlalchemy import func, select

from attribution_relay.db import get_session
from attribution_relay.models import Attribution, PostbackLog
from attribution_relay.services import store

from .conftest import IPHONE_16_2


async def _insert(click_id, **params):
    async with await get_session() as session:
        await store.insert_click(session, click_id, "default", "198.51.100.9", IPHONE_16_2, params)
        await session.commit()


@pytest.mark.parametrize("query, message", [
    ({"status": "lead"}, "missing_subid"),
    ({"subid": "clk_x"}, "missing_status"),
    ({"subid": "clk_x", "status": "{{status}}"}, "missing_status"),
    ({"subid": "clk_x", "status": "refund"}, "invalid_status"),
])
async def test_bad_requests(client, query, message):
    resp = await client.get("/api/v1/postback", params=query)
    assert resp.status_code == 400
    assert resp.json()["message"] == message


async def test_unknown_click_is_404_without_side_effects(client, outbound):
    resp = await client.get("/api/v1/postback", params={"subid": "clk_missing", "status": "lead"})

    assert resp.status_code == 404
    assert resp.json() == {
        "success": False, "message": "click_not_found", "click_id": "clk_missing", "status": "lead",
    }
    assert outbound.calls == []
    async with await get_session() as session:
        assert (await session.execute(select(func.count(Attribution.id)))).scalar_one() == 0
        logs = (await session.execute(select(PostbackLog))).scalars().all()
    assert [log.response_status for log in logs] == [404]


async def test_click_without_pixel(client, outbound):
    await _insert("clk_nopixel", sub1="camp", fb_id="PIXEL1")

    resp = await client.get("/api/v1/postback", params={"subid": "clk_nopixel", "status": "lead"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["click_found"] is True
    assert body["fb_tracking"] is False
    assert body["fb_reason"] == "no_fb_token"
    assert outbound.calls == []


async def test_lead_sends_registration(client, outbound):
    await _insert("clk_lead", fb_id="PIXEL1", fb_token="TOKEN1", fbclid="IwAR0abc")

    resp = await client.get("/api/v1/postback", params={"subid": "clk_lead", "status": "lead"})

    body = resp.json()
    assert body["fb_tracking"] is True
    assert body["fb_sent"] is True
    assert "revenue" not in body
    event = outbound.calls[0]["body"]["data"][0]
    assert event["event_name"] == "COMPLETE_REGISTRATION"
    assert event["user_data"]["client_ip_address"] == "198.51.100.9"


async def test_sale_sends_purchase_with_value(client, outbound):
    await _insert("clk_sale", fb_id="PIXEL1", fb_token="TOKEN1")

    resp = await client.get("/api/v1/postback",
                            params={"subid": "clk_sale", "status": "sale", "amount": "19.99", "currency": "EUR"})

    body = resp.json()
    assert body["fb_sent"] is True
    assert body["revenue"] == 19.99
    assert body["currency"] == "EUR"
    event = outbound.calls[0]["body"]["data"][0]
    assert event["event_name"] == "PURCHASE"
    assert event["custom_data"] == {"value": 19.99, "currency": "EUR"}


async def test_facebook_failure_still_200(client, outbound):
    outbound.status = 500
    await _insert("clk_fail", fb_id="PIXEL1", fb_token="TOKEN1")

    resp = await client.get("/api/v1/postback", params={"subid": "clk_fail", "status": "lead"})

    assert resp.status_code == 200
    assert resp.json()["fb_sent"] is False


# ---------------------------------------------------------------- appsflyer

DEMO = {"Host": "demo.test"}


async def test_appsflyer_missing_params(client):
    resp = await client.get("/api/v1/postback/appsflyer", params={"appsflyer_id": "af-1"}, headers=DEMO)
    assert resp.status_code == 400
    assert resp.json()["message"] == "missing_appsflyer_id_idfv_or_event"


async def test_appsflyer_disabled_for_default_tenant(client, outbound):
    resp = await client.get("/api/v1/postback/appsflyer",
                            params={"appsflyer_id": "af-1", "idfv": "IDFV-1", "event": "registration"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "appsflyer_not_enabled"
    assert outbound.calls == []


async def test_appsflyer_deposit_requires_amount(client, outbound):
    resp = await client.get("/api/v1/postback/appsflyer",
                            params={"appsflyer_id": "af-1", "idfv": "IDFV-1", "event": "deposit"}, headers=DEMO)
    assert resp.status_code == 400
    assert resp.json()["message"] == "amount_required_for_deposit"
    assert outbound.calls == []


async def test_appsflyer_invalid_event(client, outbound):
    resp = await client.get("/api/v1/postback/appsflyer",
                            params={"appsflyer_id": "af-1", "idfv": "IDFV-1", "event": "refund"}, headers=DEMO)
    assert resp.status_code == 400
    assert resp.json()["message"] == "invalid_event"


async def test_appsflyer_deposit_sent(client, outbound):
    resp = await client.get(
        "/api/v1/postback/appsflyer",
        params={"appsflyer_id": "af-1", "idfv": "IDFV-1", "event": "deposit", "amount": "50"},
        headers=DEMO,
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "code": 200, "message": "appsflyer_deposit_sent"}
    call = outbound.calls[0]
    assert call["url"] == "https://api2.appsflyer.com/inappevent/com.demo.app"
    assert call["headers"]["authentication"] == "af-dev-key"


async def test_appsflyer_failure_is_502(client, outbound):
    outbound.status = 401
    resp = await client.get(
        "/api/v1/postback/appsflyer",
        params={"appsflyer_id": "af-1", "idfv": "IDFV-1", "event": "registration"},
        headers=DEMO,
    )
    assert resp.status_code == 502
    assert resp.json()["message"] == "appsflyer_request_failed"
