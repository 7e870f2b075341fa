"""
后台接口：最近点击/归因、实时事件、资源概况、链接自检、应用管理、回传与错误日志
settings.admin_token 配置后需带 X-Admin-Token
"""

import json
import time
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Optional
from urllib.parse import parse_qsl, urlsplit

import psutil
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import delete, inspect, select
from sqlalchemy.exc import IntegrityError

from ..db import get_session
from ..models import App, Attribution, Click, ErrorLog, PostbackLog
from ..schemas import APIResponse, AppCreate, AppUpdate, VerifyLinkRequest
from ..services import store
from ..services.appsflyer import appsflyer_base_url
from ..services.connector import fetch_redirect
from ..services.forwarder import resend_postback
from ..services.tenants import TenantResolver
from ..utils.events import EventLog
from ..utils.logger import info, error
from ..utils.security import generate_api_key
from .deps import get_event_log, get_resolver, require_admin

router = APIRouter(prefix="/api/v1/admin", dependencies=[Depends(require_admin)])


def row_to_dict(obj: Any) -> Dict[str, Any]:
    """ORM 行 → dict，键用表的列名"""
    return {
        attr.columns[0].name: getattr(obj, attr.key)
        for attr in inspect(obj).mapper.column_attrs
    }


@router.get("/clicks")
async def recent_clicks(limit: int = Query(20, ge=1, le=1000)):
    async with await get_session() as session:
        rows = (await session.execute(
            select(Click).order_by(Click.created_at.desc(), Click.id.desc()).limit(limit)
        )).scalars().all()
    return {"clicks": [row_to_dict(r) for r in rows], "count": len(rows)}


@router.get("/attributions")
async def recent_attributions(limit: int = Query(20, ge=1, le=1000)):
    async with await get_session() as session:
        rows = (await session.execute(
            select(Attribution).order_by(Attribution.created_at.desc(), Attribution.id.desc()).limit(limit)
        )).scalars().all()
    return {"attributions": [row_to_dict(r) for r in rows], "count": len(rows)}


@router.get("/click/{click_id}")
async def click_by_id(click_id: str, response: Response):
    async with await get_session() as session:
        click = await store.get_click(session, click_id)
    if click is None:
        response.status_code = 404
        return APIResponse(success=False, code=404, message="click_not_found")
    return row_to_dict(click)


@router.get("/events")
async def live_events(events: Annotated[EventLog, Depends(get_event_log)], since: Optional[int] = None):
    """实时事件（倒序）；since 为毫秒时间戳"""
    return {"events": [e.to_dict() for e in events.get_events(since)]}


def _mb(value: float) -> str:
    return f"{round(value / 1024 / 1024)}MB"


@router.get("/health-details")
async def health_details(response: Response):
    """进程与主机资源概况"""
    try:
        proc = psutil.Process()
        mem = proc.memory_info()
        host = psutil.virtual_memory()
        return {
            "uptime": round(time.time() - proc.create_time(), 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "memory": {"rss": _mb(mem.rss), "vms": _mb(mem.vms)},
            "system": {
                "load_avg": list(psutil.getloadavg()),
                "free_mem": _mb(host.available),
                "total_mem": _mb(host.total),
            },
        }
    except psutil.Error as e:
        error(f"Error getting health details: {e}")
        response.status_code = 500
        return APIResponse(success=False, code=500, message="health_details_failed")


@router.post("/verify-link")
async def verify_link(body: VerifyLinkRequest, response: Response):
    """投放链接自检：格式 → 请求是否 302 → 库里能否查到对应 sub1 的点击"""
    if not body.url:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="url_required")

    info(f"Verifying link: {body.url}")
    report: Dict[str, Any] = {"steps": [], "success": False}

    step = {"name": "Format Check", "status": "pending"}
    report["steps"].append(step)
    parts = urlsplit(body.url)
    params = dict(parse_qsl(parts.query))
    if parts.scheme not in ("http", "https") or not parts.netloc:
        step.update(status="failed", error="Invalid URL")
        return report
    if not params.get("sub1"):
        step.update(status="failed", error="Missing sub1 parameter (required for verification)")
        return report
    campaign = params["sub1"]
    step.update(status="success", details=f"Valid URL. Campaign (sub1): {campaign}")
    report["campaign"] = campaign
    report["params"] = params

    # 跳转失败也继续查库
    step = {"name": "HTTP Check", "status": "pending"}
    report["steps"].append(step)
    status, location, failure = await fetch_redirect(body.url)
    if failure is not None or status >= 400:
        step.update(status="failed", error=failure or f"HTTP {status}")
    elif status in (301, 302):
        step.update(status="success", details=f"Redirects to: {location}")
        report["redirect_url"] = location
    else:
        step.update(status="warning", details=f"Status {status} (expected 302)")

    step = {"name": "Database Check", "status": "pending"}
    report["steps"].append(step)
    async with await get_session() as session:
        click = await store.latest_click_by_sub1(session, campaign)
    if click is None:
        step.update(status="failed", details="Click not found in database")
    else:
        step.update(status="success", details=f"Click found! ID: {click.click_id}")
        report["click"] = row_to_dict(click)
        report["success"] = True
    return report


# ---------------------------------------------------------------- apps

@router.get("/apps")
async def list_apps():
    async with await get_session() as session:
        rows = (await session.execute(select(App).order_by(App.created_at.desc(), App.id.desc()))).scalars().all()
    return {"success": True, "apps": [row_to_dict(r) for r in rows]}


@router.post("/apps")
async def create_app_entry(body: AppCreate, response: Response):
    app_row = App(**body.model_dump(), api_key=generate_api_key())
    try:
        async with await get_session() as session:
            session.add(app_row)
            await session.commit()
    except IntegrityError:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="app_id_or_domain_already_exists")

    info(f"App created: {app_row.app_name} ({app_row.domain})")
    return {"success": True, "app": row_to_dict(app_row), "message": "App created successfully"}


@router.put("/apps/{id}")
async def update_app_entry(id: int, body: AppUpdate, response: Response):
    changes = body.model_dump(exclude_unset=True)
    try:
        async with await get_session() as session:
            app_row = await session.get(App, id)
            if app_row is None:
                response.status_code = 404
                return APIResponse(success=False, code=404, message="app_not_found")
            for key, value in changes.items():
                setattr(app_row, key, value)
            await session.commit()
    except IntegrityError:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="app_id_or_domain_already_exists")

    info(f"App updated: {app_row.app_name}")
    return {"success": True, "app": row_to_dict(app_row), "message": "App updated successfully"}


@router.delete("/apps/{id}")
async def delete_app_entry(id: int, response: Response):
    async with await get_session() as session:
        app_row = await session.get(App, id)
        if app_row is None:
            response.status_code = 404
            return APIResponse(success=False, code=404, message="app_not_found")
        await session.delete(app_row)
        await session.commit()

    info(f"App deleted: {app_row.app_name}")
    return APIResponse(success=True, code=200, message="App deleted successfully")


# ---------------------------------------------------------------- logs

@router.get("/logs/postbacks")
async def postback_logs(limit: int = Query(50, ge=1, le=1000)):
    async with await get_session() as session:
        rows = (await session.execute(
            select(PostbackLog).order_by(PostbackLog.created_at.desc(), PostbackLog.id.desc()).limit(limit)
        )).scalars().all()
    return {"logs": [row_to_dict(r) for r in rows]}


@router.delete("/logs/postbacks")
async def clear_postback_logs():
    async with await get_session() as session:
        await session.execute(delete(PostbackLog))
        await session.commit()
    return APIResponse(success=True, code=200, message="Postback logs cleared")


async def _appsflyer_dev_key(url: str, resolver: TenantResolver) -> Optional[str]:
    """AppsFlyer 地址最后一段是 bundle_id，按它找租户的 dev_key"""
    bundle_id = url.rstrip("/").rsplit("/", 1)[-1]
    async with await get_session() as session:
        row = (await session.execute(
            select(App.appsflyer_dev_key).where(App.bundle_id == bundle_id)
        )).first()
    if row is not None and row[0]:
        return row[0]
    for tenant in resolver.static_tenants + [resolver.default]:
        if tenant.bundle_id == bundle_id and tenant.appsflyer_dev_key:
            return tenant.appsflyer_dev_key
    return None


@router.post("/logs/postbacks/{id}/resend")
async def resend_postback_log(id: int, response: Response,
                              events: Annotated[EventLog, Depends(get_event_log)],
                              resolver: Annotated[TenantResolver, Depends(get_resolver)]):
    """按日志记录手动重发一次，结果再记一条回传日志"""
    async with await get_session() as session:
        log = await session.get(PostbackLog, id)
    if log is None:
        response.status_code = 404
        return APIResponse(success=False, code=404, message="postback_log_not_found")
    if not log.url or not log.url.startswith("http"):
        response.status_code = 400
        return APIResponse(success=False, code=400, message="postback_log_not_resendable")

    extra_headers = None
    if log.url.startswith(appsflyer_base_url() + "/"):
        dev_key = await _appsflyer_dev_key(log.url, resolver)
        if dev_key:
            extra_headers = {"authentication": dev_key}

    status, body = await resend_postback(log, extra_headers)
    ok = 200 <= status < 300
    try:
        payload = json.loads(log.payload) if log.payload else {}
    except ValueError:
        payload = log.payload
    await events.log("postback", f"Manual resend{'' if ok else ' failed'}: #{id}", {
        "click_id": log.click_id,
        "url": log.url,
        "method": log.method,
        "payload": payload,
        "response_status": status,
        "response_body": body,
    })
    if not ok:
        error(f"Manual resend of postback #{id} failed: HTTP {status}")
    return {"success": ok, "response_status": status, "response_body": body}


@router.get("/logs/errors")
async def error_logs(limit: int = Query(50, ge=1, le=1000)):
    async with await get_session() as session:
        rows = (await session.execute(
            select(ErrorLog).order_by(ErrorLog.created_at.desc(), ErrorLog.id.desc()).limit(limit)
        )).scalars().all()
    return {"logs": [row_to_dict(r) for r in rows]}


@router.delete("/logs/errors")
async def clear_error_logs():
    async with await get_session() as session:
        await session.execute(delete(ErrorLog))
        await session.commit()
    return APIResponse(success=True, code=200, message="Error logs cleared")
