import asyncio
from dataclasses import replace
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from attribution_relay.config import AttributionSettings
from attribution_relay.db import get_session
from attribution_relay.models import Attribution, Click
from attribution_relay.services import store
from attribution_relay.services.matcher import Checkin, record_appsflyer_attribution, run_checkin
from attribution_relay.utils.security import generate_os_user_key
from attribution_relay.utils.timeutil import utcnow

from .conftest import ANDROID_UA, IPHONE_15_0, IPHONE_16_2, SDK_UA_16_2

SECRET = "test-secret"
SETTINGS = AttributionSettings()


async def _click(session, click_id, ip="1.2.3.4", ua=IPHONE_16_2, created_at=None, **params):
    click = await store.insert_click(session, click_id, "demo", ip, ua, params, created_at=created_at)
    await session.commit()
    return click


async def _attributed_flag(click_id):
    async with await get_session() as s:
        return (await s.execute(select(Click.attributed).where(Click.click_id == click_id))).scalar_one()


async def test_scenario_a_match_flips_click(session, tenant):
    now = utcnow()
    await _click(session, "clk_a", created_at=now - timedelta(minutes=30), sub1="camp7")

    result = await run_checkin(session, Checkin(idfv="IDFV-A", ip="1.2.3.4", user_agent=SDK_UA_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.attributed
    assert result.push_sub == "camp7"
    assert result.click_id == "clk_a"
    assert result.campaign_data["sub1"] == "camp7"
    assert not result.suspicious
    assert "sub1=camp7" in result.final_url
    assert await _attributed_flag("clk_a") is True


async def test_scenario_b_organic(session, tenant):
    result = await run_checkin(session, Checkin(idfv="IDFV-B", ip="9.9.9.9", user_agent=SDK_UA_16_2),
                               tenant, SECRET, SETTINGS)

    assert not result.attributed
    assert result.push_sub == "organic"
    assert result.click_id is None
    assert result.campaign_data is None
    assert result.final_url.startswith("https://tracker.test/demo?")


async def test_scenario_c_prefers_better_score_over_recency(session, tenant):
    now = utcnow()
    await _click(session, "clk_16", ua=IPHONE_16_2, created_at=now - timedelta(hours=2), sub1="new_os")
    await _click(session, "clk_15", ua=IPHONE_15_0, created_at=now - timedelta(minutes=10), sub1="old_os")

    result = await run_checkin(session, Checkin(idfv="IDFV-C", ip="1.2.3.4", user_agent=SDK_UA_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.click_id == "clk_16"
    assert await _attributed_flag("clk_15") is False


async def test_equal_scores_pick_most_recent(session, tenant):
    now = utcnow()
    await _click(session, "clk_old", created_at=now - timedelta(hours=3))
    await _click(session, "clk_new", created_at=now - timedelta(hours=1))

    result = await run_checkin(session, Checkin(idfv="IDFV-T", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.click_id == "clk_new"


async def test_scenario_d_fast_match_flagged_not_blocked(session, tenant):
    now = utcnow()
    await _click(session, "clk_fast", created_at=now - timedelta(seconds=3), sub1="quick")

    result = await run_checkin(session, Checkin(idfv="IDFV-D", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.attributed
    assert result.click_id == "clk_fast"
    assert result.suspicious
    assert "too_fast" in result.suspicious_reasons


async def test_ip_velocity_flagged(session, tenant):
    now = utcnow()
    for i in range(6):
        session.add(Attribution(os_user_key=f"other-{i}", ip_address="1.2.3.4", user_agent="x",
                                push_sub="organic", created_at=now - timedelta(minutes=10)))
    await session.commit()
    await _click(session, "clk_v", created_at=now - timedelta(minutes=5))

    result = await run_checkin(session, Checkin(idfv="IDFV-V", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.attributed
    assert result.suspicious_reasons == ["ip_velocity"]


async def test_below_threshold_is_organic(session, tenant):
    now = utcnow()
    await _click(session, "clk_android", ua=ANDROID_UA, created_at=now - timedelta(minutes=5))

    result = await run_checkin(session, Checkin(idfv="IDFV-X", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert not result.attributed
    assert await _attributed_flag("clk_android") is False


async def test_idempotent_checkin(session, tenant):
    now = utcnow()
    await _click(session, "clk_i", created_at=now - timedelta(minutes=30), sub1="camp")
    checkin = Checkin(idfv="IDFV-I", ip="1.2.3.4", user_agent=IPHONE_16_2)

    first = await run_checkin(session, checkin, tenant, SECRET, SETTINGS, now=now)
    await _click(session, "clk_i2", created_at=now - timedelta(minutes=1), sub1="other")
    second = await run_checkin(session, checkin, tenant, SECRET, SETTINGS, now=now + timedelta(minutes=1))

    assert second.cached
    assert second.os_user_key == first.os_user_key == generate_os_user_key("IDFV-I", SECRET)
    assert second.final_url == first.final_url
    assert second.push_sub == first.push_sub == "camp"
    assert second.click_id == "clk_i"
    # 第二次不做匹配，新点击保持未消费
    assert await _attributed_flag("clk_i2") is False


async def test_window_boundary(session, tenant):
    now = utcnow()
    window = timedelta(hours=SETTINGS.window_hours)
    await _click(session, "clk_outside", ip="5.5.5.5", created_at=now - window - timedelta(seconds=1))
    await _click(session, "clk_inside", ip="6.6.6.6", created_at=now - window + timedelta(seconds=1))

    outside = await run_checkin(session, Checkin(idfv="IDFV-O", ip="5.5.5.5", user_agent=IPHONE_16_2),
                                tenant, SECRET, SETTINGS, now=now)
    inside = await run_checkin(session, Checkin(idfv="IDFV-N", ip="6.6.6.6", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert not outside.attributed
    assert inside.click_id == "clk_inside"


async def test_consumed_click_is_never_reused(session, tenant):
    now = utcnow()
    await _click(session, "clk_once", created_at=now - timedelta(minutes=30))

    first = await run_checkin(session, Checkin(idfv="DEV-1", ip="1.2.3.4", user_agent=IPHONE_16_2),
                              tenant, SECRET, SETTINGS, now=now)
    second = await run_checkin(session, Checkin(idfv="DEV-2", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert first.click_id == "clk_once"
    assert second.click_id is None


async def test_concurrent_checkins_consume_at_most_once(db, tenant):
    now = utcnow()
    async with await get_session() as s:
        await _click(s, "clk_race", created_at=now - timedelta(minutes=30))

    async def checkin(idfv):
        async with await get_session() as s:
            return await run_checkin(s, Checkin(idfv=idfv, ip="1.2.3.4", user_agent=IPHONE_16_2),
                                     tenant, SECRET, SETTINGS, now=now)

    results = await asyncio.gather(*(checkin(f"RACE-{i}") for i in range(5)))

    assert sum(1 for r in results if r.click_id == "clk_race") == 1
    async with await get_session() as s:
        refs = (await s.execute(
            select(Attribution).where(Attribution.click_id == "clk_race")
        )).scalars().all()
    assert len(refs) == 1


async def test_lost_race_falls_back_to_next_candidate(session, tenant, monkeypatch):
    now = utcnow()
    await _click(session, "clk_best", ua=IPHONE_16_2, created_at=now - timedelta(minutes=5))
    await _click(session, "clk_next", ua=IPHONE_15_0, created_at=now - timedelta(minutes=50))
    # 另一个请求先消费了最优候选，但本次查询结果里它仍然在
    real_find = store.find_candidates

    async def stale_find(s, ip, since, until):
        rows = await real_find(s, ip, since, until)
        await store.consume_click(s, "clk_best", now)
        return rows

    monkeypatch.setattr(store, "find_candidates", stale_find)
    result = await run_checkin(session, Checkin(idfv="IDFV-F", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.click_id == "clk_next"


async def test_velocity_query_failure_does_not_block_match(session, tenant, monkeypatch):
    now = utcnow()
    await _click(session, "clk_p", created_at=now - timedelta(minutes=10))

    async def broken_count(s, ip, since):
        raise OperationalError("SELECT count(*) FROM attributions", None, Exception("database is locked"))

    monkeypatch.setattr(store, "count_attributions_from_ip", broken_count)
    result = await run_checkin(session, Checkin(idfv="IDFV-P", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.click_id == "clk_p"
    assert "ip_velocity" not in result.suspicious_reasons
    assert await _attributed_flag("clk_p") is True


async def test_same_device_written_concurrently_returns_stored_row(session, tenant, monkeypatch):
    now = utcnow()
    await _click(session, "clk_dup", created_at=now - timedelta(minutes=10))
    os_user_key = generate_os_user_key("IDFV-DUP", SECRET)
    real_find = store.find_candidates

    # 查询候选之后、提交之前，另一个请求已经为同一设备写入了归因
    async def find_then_race(s, ip, since, until):
        rows = await real_find(s, ip, since, until)
        async with await get_session() as other:
            other.add(Attribution(os_user_key=os_user_key, app_id="demo", ip_address="5.5.5.5",
                                  user_agent="sdk", idfv="IDFV-DUP", push_sub="organic",
                                  final_url="https://tracker.test/demo?x=1", created_at=now))
            await other.commit()
        return rows

    monkeypatch.setattr(store, "find_candidates", find_then_race)
    result = await run_checkin(session, Checkin(idfv="IDFV-DUP", ip="1.2.3.4", user_agent=IPHONE_16_2),
                               tenant, SECRET, SETTINGS, now=now)

    assert result.cached
    assert result.os_user_key == os_user_key
    assert result.click_id is None
    assert result.push_sub == "organic"
    # 消费随事务一起回滚，点击还能被别的设备匹配
    assert await _attributed_flag("clk_dup") is False


async def test_threshold_monotonicity(db, tenant):
    now = utcnow()
    agents = [IPHONE_16_2, IPHONE_15_0, ANDROID_UA, SDK_UA_16_2]

    async def match_count(threshold, run):
        settings = replace(SETTINGS, min_similarity=threshold)
        matched = 0
        async with await get_session() as s:
            for i, ua in enumerate(agents):
                ip = f"10.{run}.0.{i}"
                await _click(s, f"clk_{run}_{i}", ip=ip, ua=ua, created_at=now - timedelta(minutes=20))
                result = await run_checkin(s, Checkin(idfv=f"M-{run}-{i}", ip=ip, user_agent=IPHONE_16_2),
                                           tenant, SECRET, settings, now=now)
                matched += result.attributed
        return matched

    counts = [await match_count(t, run) for run, t in enumerate([0.0, 0.5, 0.7, 0.9, 1.0])]
    assert counts == sorted(counts, reverse=True)
    # 安卓 UA 得 0 分，阈值为 0 也不算命中
    assert counts[0] == 3


async def test_appsflyer_attribution_upserts_campaign_fields(session, tenant):
    conversion = {"media_source": "moloco", "campaign": "c1", "af_sub1": "buyer", "af_sub2": "US"}
    first = await record_appsflyer_attribution(session, "af-1", "IDFV-AF", conversion, tenant, SECRET,
                                               ip="1.2.3.4", user_agent="sdk")
    conversion2 = {"media_source": "unity", "campaign": "c2", "af_sub1": "buyer2"}
    second = await record_appsflyer_attribution(session, "af-2", "IDFV-AF", conversion2, tenant, SECRET,
                                                ip="1.2.3.4", user_agent="sdk")

    assert first.os_user_key == second.os_user_key
    assert second.push_sub == "buyer2"
    assert second.campaign_data["media_source"] == "unity"

    row = (await session.execute(
        select(Attribution).where(Attribution.os_user_key == second.os_user_key)
    )).scalar_one()
    await session.refresh(row)
    assert row.attribution_source == "appsflyer"
    assert row.appsflyer_id == "af-2"
    assert row.media_source == "unity"
    assert row.campaign == "c2"
    assert row.af_sub2 is None
    # click_id 保留首次写入的值
    assert row.click_id == "af-1"
