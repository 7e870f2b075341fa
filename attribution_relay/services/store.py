"""
点击 / 归因的持久化操作
所有函数都接收调用方的 AsyncSession，事务边界由调用方决定
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Attribution, Click
from ..utils.timeutil import utcnow

CLICK_FIELDS = ("fbclid", "sub1", "sub2", "sub3", "sub4", "sub5", "adsetid", "fb_id", "fb_token")


async def insert_click(session: AsyncSession, click_id: str, app_id: Optional[str], ip: str,
                       user_agent: str, params: Dict[str, Any], created_at: Optional[datetime] = None) -> Click:
    click = Click(
        click_id=click_id,
        app_id=app_id,
        ip_address=ip,
        user_agent=user_agent or "",
        attributed=False,
        created_at=created_at or utcnow(),
        **{k: params.get(k) for k in CLICK_FIELDS},
    )
    session.add(click)
    await session.flush()
    return click


async def get_click(session: AsyncSession, click_id: str) -> Optional[Click]:
    return (await session.execute(
        select(Click).where(Click.click_id == click_id)
    )).scalar_one_or_none()


async def latest_click_by_sub1(session: AsyncSession, sub1: str) -> Optional[Click]:
    return (await session.execute(
        select(Click).where(Click.sub1 == sub1).order_by(Click.created_at.desc(), Click.id.desc()).limit(1)
    )).scalars().first()


async def find_candidates(session: AsyncSession, ip: str, since: datetime, until: datetime) -> List[Click]:
    """同 IP、窗口内、未被消费的点击，按时间倒序"""
    result = await session.execute(
        select(Click)
        .where(
            Click.ip_address == ip,
            Click.created_at >= since,
            Click.created_at < until,
            Click.attributed.is_(False),
        )
        .order_by(Click.created_at.desc(), Click.id.desc())
    )
    return list(result.scalars().all())


async def consume_click(session: AsyncSession, click_id: str, now: datetime) -> bool:
    """条件更新：只有 attributed=false 的那一行会被翻转；返回是否抢到"""
    result = await session.execute(
        update(Click)
        .where(Click.click_id == click_id, Click.attributed.is_(False))
        .values(attributed=True, attributed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_attribution_by_key(session: AsyncSession, os_user_key: str) -> Optional[Attribution]:
    return (await session.execute(
        select(Attribution).where(Attribution.os_user_key == os_user_key)
    )).scalar_one_or_none()


async def count_attributions_from_ip(session: AsyncSession, ip: str, since: datetime) -> int:
    return (await session.execute(
        select(func.count(Attribution.id)).where(
            Attribution.ip_address == ip,
            Attribution.created_at >= since,
        )
    )).scalar_one()


async def click_stats(session: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    total = (await session.execute(select(func.count(Click.id)))).scalar_one()
    attributed = (await session.execute(
        select(func.count(Click.id)).where(Click.attributed.is_(True))
    )).scalar_one()
    last_24h = (await session.execute(
        select(func.count(Click.id)).where(Click.created_at >= now - timedelta(hours=24))
    )).scalar_one()
    return {
        "total_clicks": total,
        "attributed_clicks": attributed,
        "clicks_last_24h": last_24h,
        "attribution_rate": _rate(attributed, total),
    }


async def attribution_stats(session: AsyncSession) -> Dict[str, Any]:
    total = (await session.execute(select(func.count(Attribution.id)))).scalar_one()
    attributed = (await session.execute(
        select(func.count(Attribution.id)).where(Attribution.click_id.is_not(None))
    )).scalar_one()
    return {
        "total_attributions": total,
        "attributed_installs": attributed,
        "organic_installs": total - attributed,
        "attribution_rate": _rate(attributed, total),
    }


def _rate(part: int, total: int) -> float:
    # 空表时返回 0，不返回 NaN
    if not total:
        return 0.0
    return round(part / total * 100, 2)
