from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from ..config import get_setting
from ..db import get_session
from ..schemas import APIResponse, Tenant
from ..services import store
from ..services.store import CLICK_FIELDS
from ..utils.events import EventLog
from ..utils.logger import info, warning, error
from ..utils.security import generate_click_id
from .deps import (
    clean_query_placeholders, client_ip, get_debouncer, get_event_log, get_tenant, require_api_key,
)

router = APIRouter()

FALLBACK_APP_STORE_URL = "https://apps.apple.com"

# 根路径只有带这些参数时才按点击处理
ROOT_TRACKING_PARAMS = ("fb_id", "fbclid", "sub1")


def _app_store_url(tenant: Tenant, host: str) -> str:
    if tenant.app_store_url:
        return tenant.app_store_url
    url = get_setting("default_app_store_url") or FALLBACK_APP_STORE_URL
    warning(f"No app_store_url for tenant {tenant.app_id} (host={host}), using fallback: {url}")
    return url


async def track_click(request: Request, tenant: Tenant, events: EventLog, debouncer) -> Response:
    """记录一次广告点击并 302 跳转到应用商店"""
    params = clean_query_placeholders(request)
    ip = client_ip(request)
    user_agent = request.headers.get("user-agent", "")
    redirect_url = _app_store_url(tenant, request.headers.get("host", ""))

    if debouncer is not None and not await debouncer.should_record(ip):
        info(f"Duplicate click from {ip} within debounce window, not stored")
        await events.log("click", f"Duplicate click debounced: {params.get('sub1') or 'unknown_campaign'}", {
            "ip": ip,
            "app": tenant.app_name,
            "debounced": True,
        })
        return RedirectResponse(redirect_url, status_code=302)

    click_id = generate_click_id()
    try:
        async with await get_session() as session:
            await store.insert_click(
                session, click_id, tenant.app_id, ip, user_agent,
                {k: params.get(k) for k in CLICK_FIELDS},
            )
            await session.commit()
    except Exception as e:
        error(f"Error tracking click: {e}")
        if debouncer is not None:
            await debouncer.forget(ip)
        await events.log("error", f"Click tracking failed: {e}", {"ip": ip})
        return JSONResponse(
            status_code=500,
            content=APIResponse(success=False, code=500, message="click_tracking_failed").model_dump(),
        )

    info(f"Click tracked: {click_id} app={tenant.app_name or tenant.app_id} ip={ip} "
         f"sub1={params.get('sub1')} has_fb_pixel={bool(params.get('fb_id'))}")
    await events.log("click", f"New click: {params.get('sub1') or 'unknown_campaign'}", {
        "click_id": click_id,
        "sub1": params.get("sub1"),
        "source": params.get("sub2"),
        "ip": ip,
        "app": tenant.app_name,
    })
    return RedirectResponse(redirect_url, status_code=302)


@router.get("/api/v1/track/click")
@router.get("/t")
@router.get("/click")
@router.get("/track")
async def click_endpoint(request: Request,
                         tenant: Annotated[Tenant, Depends(get_tenant)],
                         events: Annotated[EventLog, Depends(get_event_log)],
                         debouncer=Depends(get_debouncer)):
    """广告点击入口（多个别名路径）"""
    return await track_click(request, tenant, events, debouncer)


@router.get("/")
async def root(request: Request,
               tenant: Annotated[Tenant, Depends(get_tenant)],
               events: Annotated[EventLog, Depends(get_event_log)],
               debouncer=Depends(get_debouncer)):
    """根路径：带追踪参数时按点击处理，否则返回服务说明"""
    params = clean_query_placeholders(request)
    if any(params.get(k) for k in ROOT_TRACKING_PARAMS):
        return await track_click(request, tenant, events, debouncer)
    return {
        "message": "Attribution Relay",
        "endpoints": {
            "click_tracking": ["/api/v1/track/click", "/t", "/click", "/track", "/ (with parameters)"],
            "attribution": "/api/v1/attribution",
            "postback": "/api/v1/postback",
        },
    }


@router.get("/api/v1/clicks/stats", dependencies=[Depends(require_api_key)])
async def click_stats(response: Response):
    try:
        async with await get_session() as session:
            return await store.click_stats(session)
    except Exception as e:
        error(f"Error getting click stats: {e}")
        response.status_code = 500
        return APIResponse(success=False, code=500, message="stats_failed")
