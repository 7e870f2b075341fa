"""
安装归因匹配

checkin 状态机：
  LOOKUP_EXISTING → CANDIDATE_SEARCH → SCORE_AND_SELECT → CONSUME → FRAUD_CHECK → PERSIST
同一设备（os_user_key）只归因一次；一条点击最多被一次 checkin 消费。
消费与写入归因在同一事务里，os_user_key 唯一键冲突时整体回滚并返回已存在的结果。
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import AttributionSettings, SimilarityWeights, attribution_settings
from ..models import Attribution, Click
from ..schemas import Tenant
from ..utils.logger import info, warning, perf_info
from ..utils.security import generate_os_user_key
from ..utils.timeutil import utcnow
from . import store
from .tracker import build_tracker_url, extract_appsflyer_params, extract_facebook_params

_OS_VERSION = re.compile(r"os (\d+)[_.](\d+)")


def user_agent_similarity(ua1: Optional[str], ua2: Optional[str],
                          weights: SimilarityWeights = SimilarityWeights()) -> float:
    """UA 相似度，对称，不区分大小写，结果落在 [0, 1]"""
    a = (ua1 or "").lower()
    b = (ua2 or "").lower()
    score = 0.0

    if ("iphone" in a and "iphone" in b) or ("ipad" in a and "ipad" in b):
        score += weights.device_family

    m1 = _OS_VERSION.search(a)
    m2 = _OS_VERSION.search(b)
    if m1 and m2 and m1.group(1) == m2.group(1):
        score += weights.os_major

    if ("mobile" in a and "mobile" in b) or ("safari" in a and "safari" in b):
        score += weights.browser_marker

    return round(min(score, 1.0), 6)


def select_candidates(candidates: Sequence[Click], user_agent: str,
                      settings: AttributionSettings) -> List[Tuple[Click, float]]:
    """过阈值的候选按分数从高到低排；同分保持输入顺序（新的在前）

    第一个元素就是"严格大于当前最优"规则选出的那条；后面的用于抢占失败时回退。
    """
    scored = []
    for click in candidates:
        score = user_agent_similarity(click.user_agent, user_agent, settings.weights)
        # 零分不算命中，阈值配成 0 也一样
        if score > 0 and score >= settings.min_similarity:
            scored.append((click, score))
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored


async def check_suspicious(session: AsyncSession, click: Click, ip: str, now: datetime,
                           settings: AttributionSettings) -> List[str]:
    """两条风控规则，只打标不拦截；返回命中的原因列表"""
    reasons = []
    fraud = settings.fraud

    elapsed = (now - click.created_at).total_seconds()
    if elapsed < fraud.min_seconds_to_match:
        reasons.append("too_fast")
        warning(f"Suspicious: attribution too fast ({elapsed:.1f}s) click={click.click_id}")

    since = now - timedelta(minutes=fraud.ip_window_minutes)
    try:
        count = await store.count_attributions_from_ip(session, ip, since)
    except SQLAlchemyError as e:
        warning(f"IP velocity check skipped for {ip}: {e}")
        return reasons
    if count > fraud.ip_max_attributions:
        reasons.append("ip_velocity")
        warning(f"Suspicious: {count} attributions from {ip} in last {fraud.ip_window_minutes}m")

    return reasons


@dataclass
class Checkin:
    idfv: str
    ip: str
    user_agent: str = ""
    idfa: Optional[str] = None
    app_version: Optional[str] = None
    os_version: Optional[str] = None
    device_model: Optional[str] = None


@dataclass
class CheckinResult:
    os_user_key: str
    push_sub: str
    final_url: Optional[str] = None
    click_id: Optional[str] = None
    campaign_data: Optional[Dict[str, Any]] = None
    cached: bool = False
    click: Optional[Click] = None
    suspicious_reasons: List[str] = field(default_factory=list)

    @property
    def attributed(self) -> bool:
        return self.click_id is not None

    @property
    def suspicious(self) -> bool:
        return bool(self.suspicious_reasons)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "attributed": self.attributed,
            "final_url": self.final_url,
            "push_sub": self.push_sub,
            "os_user_key": self.os_user_key,
            "click_id": self.click_id,
            "campaign_data": self.campaign_data,
        }


def _cached_result(row: Attribution) -> CheckinResult:
    return CheckinResult(
        os_user_key=row.os_user_key,
        push_sub=row.push_sub or "organic",
        final_url=row.final_url,
        click_id=row.click_id,
        cached=True,
    )


def _campaign_data(click: Click) -> Dict[str, Any]:
    return {
        "fbclid": click.fbclid,
        "sub1": click.sub1,
        "sub2": click.sub2,
        "sub3": click.sub3,
        "adsetid": click.adsetid,
    }


async def run_checkin(session: AsyncSession, checkin: Checkin, tenant: Optional[Tenant], secret: str,
                      settings: Optional[AttributionSettings] = None,
                      now: Optional[datetime] = None) -> CheckinResult:
    """一次 checkin 的完整匹配流程；数据库异常直接抛给调用方（事务已回滚）"""
    settings = settings or attribution_settings()
    now = now or utcnow()
    os_user_key = generate_os_user_key(checkin.idfv, secret)

    existing = await store.get_attribution_by_key(session, os_user_key)
    if existing is not None:
        info(f"Returning existing attribution: {os_user_key}")
        return _cached_result(existing)

    since = now - timedelta(hours=settings.window_hours)
    candidates = await store.find_candidates(session, checkin.ip, since, now)
    ranked = select_candidates(candidates, checkin.user_agent, settings)

    matched: Optional[Click] = None
    for click, score in ranked:
        if await store.consume_click(session, click.click_id, now):
            matched = click
            perf_info(f"[match] click={click.click_id} score={score} candidates={len(candidates)}")
            break
        info(f"Click {click.click_id} already consumed, trying next candidate")

    reasons: List[str] = []
    if matched is not None:
        reasons = await check_suspicious(session, matched, checkin.ip, now, settings)

    push_sub = (matched.sub1 if matched is not None else None) or "organic"
    params = extract_facebook_params(
        matched, os_user_key, checkin.idfv,
        bundle=tenant.bundle_id if tenant else None,
        app_version=checkin.app_version,
    )
    final_url = build_tracker_url(params, tenant)

    session.add(Attribution(
        os_user_key=os_user_key,
        click_id=matched.click_id if matched is not None else None,
        app_id=tenant.app_id if tenant else "default",
        ip_address=checkin.ip,
        user_agent=checkin.user_agent or "",
        idfa=checkin.idfa or None,
        idfv=checkin.idfv,
        device_model=checkin.device_model,
        os_version=checkin.os_version,
        app_version=checkin.app_version,
        push_sub=push_sub,
        final_url=final_url,
        attribution_source="facebook",
        created_at=now,
    ))

    try:
        await session.commit()
    except IntegrityError:
        # 并发的同设备 checkin 先写入了：本次的消费一起回滚
        await session.rollback()
        existing = await store.get_attribution_by_key(session, os_user_key)
        if existing is None:
            raise
        info(f"Concurrent checkin for {os_user_key}, returning stored attribution")
        return _cached_result(existing)
    except Exception:
        await session.rollback()
        raise

    return CheckinResult(
        os_user_key=os_user_key,
        push_sub=push_sub,
        final_url=final_url,
        click_id=matched.click_id if matched is not None else None,
        campaign_data=_campaign_data(matched) if matched is not None else None,
        click=matched,
        suspicious_reasons=reasons,
    )


# AppsFlyer 重复上报时允许覆盖的字段
APPSFLYER_UPDATE_FIELDS = (
    "appsflyer_id", "media_source", "campaign", "push_sub", "final_url", "af_sub1", "af_sub2",
)


async def record_appsflyer_attribution(session: AsyncSession, appsflyer_id: str, idfv: str,
                                       conversion: Dict[str, Any], tenant: Optional[Tenant], secret: str,
                                       ip: str, user_agent: str,
                                       app_version: Optional[str] = None) -> CheckinResult:
    """AppsFlyer 转化数据写入归因；同一设备再次上报时更新活动字段"""
    os_user_key = generate_os_user_key(idfv, secret)
    push_sub = conversion.get("af_sub1") or "organic"
    params = extract_appsflyer_params(
        appsflyer_id, conversion, os_user_key, idfv,
        bundle=tenant.bundle_id if tenant else None,
        app_version=app_version,
    )
    final_url = build_tracker_url(params, tenant)

    values = {
        "os_user_key": os_user_key,
        "app_id": tenant.app_id if tenant else "default",
        "attribution_source": "appsflyer",
        "click_id": appsflyer_id,
        "appsflyer_id": appsflyer_id,
        "ip_address": ip or "unknown",
        "user_agent": user_agent or "unknown",
        "idfv": idfv,
        "app_version": app_version,
        "media_source": conversion.get("media_source") or None,
        "campaign": conversion.get("campaign") or None,
        "push_sub": push_sub,
        "final_url": final_url,
        **{f"af_sub{i}": conversion.get(f"af_sub{i}") or None for i in range(1, 6)},
    }

    existing = await store.get_attribution_by_key(session, os_user_key)
    if existing is None:
        session.add(Attribution(**values))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            existing = await store.get_attribution_by_key(session, os_user_key)
            if existing is None:
                raise

    if existing is not None:
        for name in APPSFLYER_UPDATE_FIELDS:
            setattr(existing, name, values[name])
        await session.commit()

    return CheckinResult(
        os_user_key=os_user_key,
        push_sub=push_sub,
        final_url=final_url,
        click_id=appsflyer_id,
        campaign_data={
            "appsflyer_id": appsflyer_id,
            "media_source": conversion.get("media_source"),
            "campaign": conversion.get("campaign"),
            **{f"sub{i}": conversion.get(f"af_sub{i}") for i in range(1, 6)},
        },
    )
