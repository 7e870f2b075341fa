"""
下游 tracker（Keitaro）落地链接拼装
Facebook 与 AppsFlyer 两种来源先统一成 TrackerParams，再按参数表渲染成 query
"""

import urllib.parse
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple

from ..config import get_setting
from ..mapping_dsl import build_query_params
from ..schemas import Tenant
from ..utils.logger import perf_info

DEFAULT_CAMPAIGN_URL = "https://tracker.example.com/campaign"


@dataclass(frozen=True)
class TrackerParams:
    os_user_key: str
    click_id: Optional[str] = None
    sub1: Optional[str] = None
    sub2: Optional[str] = None
    sub3: Optional[str] = None
    sub4: Optional[str] = None
    sub5: Optional[str] = None
    sub6: Optional[str] = None          # IDFV
    push_sub: Optional[str] = None
    fbclid: Optional[str] = None
    adset: Optional[str] = None
    media_source: Optional[str] = None
    campaign: Optional[str] = None
    bundle: Optional[str] = None
    app_version: Optional[str] = None


# 参数名 -> 映射表达式；与 tracker 侧的宏一一对应
TRACKER_PARAM_MAP: List[Tuple[str, str]] = [
    ("app_name", "tenant.app_name"),
    ("appsflyer_id", "params.click_id"),
    ("customer_user_id", "params.os_user_key"),
    ("source", "params.media_source"),
    ("bundle", "params.bundle | coalesce(tenant.bundle_id)"),
    ("campaign", "params.campaign"),
    ("af_sub1", "params.sub1"),
    ("af_sub2", "params.sub2"),
    ("push_sub", "params.push_sub"),
    ("sub1", "params.sub1"),
    ("sub2", "params.sub2"),
    ("sub3", "params.sub3"),
    ("sub4", "params.sub4"),
    ("sub5", "params.sub5"),
    ("sub6", "params.sub6"),
    ("click_id", "params.click_id"),
    ("external_id", "params.click_id"),
    ("os_user_key", "params.os_user_key"),
    ("push", "params.push_sub"),
    ("fbclid", "params.fbclid"),
    ("adset", "params.adset"),
    ("sub_id_18", "params.adset"),
    ("app_version", "params.app_version"),
]


def _param_map(config: Dict[str, Any] = None) -> List[Tuple[str, str]]:
    """内置参数表 + settings.tracker.extra_params（不覆盖内置项）"""
    extra = get_setting("tracker.extra_params", {}, config) or {}
    builtin = {name for name, _ in TRACKER_PARAM_MAP}
    return TRACKER_PARAM_MAP + [(k, str(v)) for k, v in extra.items() if k not in builtin]


def tracker_query(params: TrackerParams, tenant: Optional[Tenant], config: Dict[str, Any] = None) -> Dict[str, str]:
    ctx = {"params": asdict(params), "tenant": tenant.model_dump() if tenant else {}}
    return build_query_params(_param_map(config), ctx)


def build_tracker_url(params: TrackerParams, tenant: Optional[Tenant], config: Dict[str, Any] = None) -> str:
    """纯函数：同样的输入得到同样的参数集合"""
    base_url = (
        (tenant.tracker_campaign_url if tenant else None)
        or get_setting("tracker.default_campaign_url", None, config)
        or DEFAULT_CAMPAIGN_URL
    )
    query = urllib.parse.urlencode(tracker_query(params, tenant, config))
    sep = "&" if "?" in base_url else "?"
    final_url = f"{base_url}{sep}{query}" if query else base_url

    source = "facebook" if params.fbclid else (
        f"appsflyer/{params.media_source}" if params.media_source else "organic"
    )
    perf_info(f"[to-tracker] source={source} push_sub={params.push_sub} url_len={len(final_url)}")
    return final_url


def extract_facebook_params(click: Any, os_user_key: str, idfv: Optional[str],
                            bundle: Optional[str] = None, app_version: Optional[str] = None) -> TrackerParams:
    """广告点击（或自然量 click=None）→ TrackerParams"""
    if click is None:
        return TrackerParams(
            os_user_key=os_user_key,
            sub6=idfv or None,
            push_sub="organic",
            bundle=bundle,
            app_version=app_version,
        )
    return TrackerParams(
        os_user_key=os_user_key,
        click_id=click.click_id,
        sub1=click.sub1 or None,
        sub2=click.sub2 or None,
        sub3=click.sub3 or None,
        sub4=click.sub4 or None,
        sub5=click.sub5 or None,
        sub6=idfv or None,
        push_sub=click.sub1 or "organic",
        fbclid=click.fbclid or None,
        adset=click.adsetid or None,
        media_source="facebook" if click.fbclid else None,
        campaign=click.sub1 or None,
        bundle=bundle,
        app_version=app_version,
    )


def extract_appsflyer_params(appsflyer_id: str, conversion: Dict[str, Any], os_user_key: str,
                             idfv: Optional[str], bundle: Optional[str] = None,
                             app_version: Optional[str] = None) -> TrackerParams:
    """AppsFlyer 转化数据 → TrackerParams，af_subN 对应 subN"""
    return TrackerParams(
        os_user_key=os_user_key,
        click_id=appsflyer_id,
        sub1=conversion.get("af_sub1") or None,
        sub2=conversion.get("af_sub2") or None,
        sub3=conversion.get("af_sub3") or None,
        sub4=conversion.get("af_sub4") or None,
        sub5=conversion.get("af_sub5") or None,
        sub6=conversion.get("idfv") or idfv or None,
        push_sub=conversion.get("af_sub1") or "organic",
        media_source=conversion.get("media_source") or None,
        campaign=conversion.get("campaign") or None,
        bundle=bundle,
        app_version=app_version,
    )
