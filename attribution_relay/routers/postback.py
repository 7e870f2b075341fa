from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response

from ..db import get_session
from ..schemas import APIResponse, Tenant
from ..services import store
from ..services.appsflyer import AppsFlyerError, AppsFlyerEvents
from ..services.facebook import COMPLETE_REGISTRATION, PURCHASE, FacebookConversions
from ..utils.events import EventLog
from ..utils.logger import info, warning, error
from .deps import clean_query_placeholders, get_event_log, get_facebook, get_tenant

router = APIRouter(prefix="/api/v1")

# tracker 回传状态 → Facebook 事件
STATUS_EVENTS = {
    "lead": COMPLETE_REGISTRATION,
    "sale": PURCHASE,
}


def _parse_amount(raw: Optional[str]) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _missing_pixel_reason(click: Any) -> str:
    if not click.fb_id:
        return "no_fb_pixel_id"
    return "no_fb_token"


async def _log_inbound(events: EventLog, summary: str, request: Request, query: Dict[str, Any],
                       click_id: Optional[str], status_code: int, body: Dict[str, Any]) -> None:
    await events.log("postback", summary, {
        "click_id": click_id,
        "url": str(request.url),
        "method": request.method,
        "payload": query,
        "response_status": status_code,
        "response_body": body,
    })


@router.get("/postback")
async def handle_postback(request: Request, response: Response,
                          events: Annotated[EventLog, Depends(get_event_log)],
                          facebook: Annotated[FacebookConversions, Depends(get_facebook)]):
    """tracker 回传（lead / sale）→ Facebook 转化事件"""
    query = clean_query_placeholders(request)
    subid = query.get("subid")
    status = query.get("status")

    if not subid:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="missing_subid")
    if not status:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="missing_status")
    if status not in STATUS_EVENTS:
        warning(f"Unknown postback status: {status}")
        response.status_code = 400
        return APIResponse(success=False, code=400, message="invalid_status")

    info(f"Postback received: subid={subid} status={status} amount={query.get('amount', 'n/a')}")

    try:
        async with await get_session() as session:
            click = await store.get_click(session, subid)
    except Exception as e:
        error(f"Error handling postback: {e}")
        await events.log("error", f"Postback failed: {e}", {"query": query})
        response.status_code = 500
        return APIResponse(success=False, code=500, message="postback_failed")

    if click is None:
        warning(f"Click not found for subid: {subid}")
        body = {"success": False, "message": "click_not_found", "click_id": subid, "status": status}
        await _log_inbound(events, "Postback ignored: Click not found", request, query, subid, 404, body)
        response.status_code = 404
        return body

    if not click.has_pixel_credentials:
        info("No Facebook credentials for this click, skipping FB event")
        body = {
            "success": True,
            "message": "postback_received_without_pixel",
            "click_id": subid,
            "status": status,
            "click_found": True,
            "fb_tracking": False,
            "fb_reason": _missing_pixel_reason(click),
        }
        await _log_inbound(events, f"Postback: {status} (no FB)", request, query, subid, 200, body)
        return body

    event_name = STATUS_EVENTS[status]
    amount = _parse_amount(query.get("amount"))
    currency = query.get("currency") or "USD"
    if status == "sale":
        sent = await facebook.send_purchase(click, amount, currency)
    else:
        sent = await facebook.send_registration(click)

    body: Dict[str, Any] = {
        "success": True,
        "message": f"{event_name} event sent to Facebook" if sent else f"{event_name} event failed",
        "subid": subid,
        "status": status,
        "fb_tracking": True,
        "fb_sent": sent,
    }
    if amount is not None:
        body["revenue"] = amount
        body["currency"] = currency

    await _log_inbound(events, f"Postback: {status} ({event_name})", request, query, subid, 200, body)
    return body


@router.get("/postback/appsflyer")
async def appsflyer_postback(request: Request, response: Response,
                             tenant: Annotated[Tenant, Depends(get_tenant)],
                             events: Annotated[EventLog, Depends(get_event_log)]):
    """tracker 回传 → AppsFlyer S2S（registration / deposit）"""
    query = clean_query_placeholders(request)
    appsflyer_id = query.get("appsflyer_id")
    idfv = query.get("idfv")
    event = query.get("event")

    if not appsflyer_id or not idfv or not event:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="missing_appsflyer_id_idfv_or_event")

    if not tenant.appsflyer_enabled or not tenant.appsflyer_dev_key:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="appsflyer_not_enabled")

    service = AppsFlyerEvents(tenant.appsflyer_dev_key, tenant.bundle_id, events)
    try:
        if event == "registration":
            await service.send_registration(appsflyer_id, idfv)
        elif event == "deposit":
            amount = _parse_amount(query.get("amount"))
            if amount is None:
                response.status_code = 400
                return APIResponse(success=False, code=400, message="amount_required_for_deposit")
            await service.send_deposit(appsflyer_id, idfv, amount, query.get("currency") or "USD")
        else:
            response.status_code = 400
            return APIResponse(success=False, code=400, message="invalid_event")
    except AppsFlyerError as e:
        error(f"AppsFlyer postback error: {e}")
        response.status_code = 502
        return APIResponse(success=False, code=502, message="appsflyer_request_failed")

    info(f"AppsFlyer {event} sent: appsflyer_id={appsflyer_id[:10]}... app={tenant.app_name}")
    return APIResponse(success=True, code=200, message=f"appsflyer_{event}_sent")
