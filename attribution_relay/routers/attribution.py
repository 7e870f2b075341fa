from typing import Annotated, Union

from fastapi import APIRouter, Depends, Request, Response

from ..config import get_setting
from ..db import get_session
from ..schemas import (
    APIResponse, AppsFlyerAttributionRequest, AttributionResponse, CheckinRequest, Tenant,
)
from ..services import store
from ..services.facebook import FacebookConversions
from ..services.forwarder import BackgroundDispatcher, dispatch_install
from ..services.matcher import Checkin, record_appsflyer_attribution, run_checkin
from ..utils.events import EventLog
from ..utils.logger import info, error
from .deps import (
    client_ip, get_dispatcher, get_event_log, get_facebook, get_tenant, require_api_key,
)

router = APIRouter(prefix="/api/v1")


def _secret() -> str:
    return str(get_setting("api_secret_key", ""))


@router.post("/attribution", response_model=Union[AttributionResponse, APIResponse],
             dependencies=[Depends(require_api_key)])
async def fetch_attribution(body: CheckinRequest, request: Request, response: Response,
                            tenant: Annotated[Tenant, Depends(get_tenant)],
                            events: Annotated[EventLog, Depends(get_event_log)],
                            dispatcher: Annotated[BackgroundDispatcher, Depends(get_dispatcher)],
                            facebook: Annotated[FacebookConversions, Depends(get_facebook)]):
    """iOS SDK 首次启动 checkin：匹配点击并返回落地链接"""
    if not body.idfv:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="idfv_required")

    checkin = Checkin(
        idfv=body.idfv,
        ip=client_ip(request),
        user_agent=body.user_agent or request.headers.get("user-agent", ""),
        idfa=body.idfa,
        app_version=body.app_version,
        os_version=body.os_version,
        device_model=body.device_model,
    )

    try:
        async with await get_session() as session:
            result = await run_checkin(session, checkin, tenant, _secret())
    except Exception as e:
        error(f"Error in attribution: {e}")
        await events.log("error", f"Attribution failed: {e}", {"idfv": body.idfv, "ip": checkin.ip})
        response.status_code = 500
        return APIResponse(success=False, code=500, message="attribution_failed")

    if not result.cached:
        await events.log(
            "attribution",
            f"Attribution request: {'MATCHED' if result.attributed else 'ORGANIC'}"
            + (" (suspicious)" if result.suspicious else ""),
            {
                "idfv": checkin.idfv,
                "click_id": result.click_id,
                "push_sub": result.push_sub,
                "final_url": result.final_url,
                "suspicious": result.suspicious,
                "suspicious_reasons": result.suspicious_reasons,
            },
        )
        dispatch_install(dispatcher, facebook, result.click, checkin.ip, checkin.user_agent)

    info(f"Attribution completed: attributed={result.attributed} cached={result.cached} "
         f"os_user_key={result.os_user_key} push_sub={result.push_sub}")
    return AttributionResponse(**result.to_response())


@router.post("/attribution/appsflyer", response_model=Union[AttributionResponse, APIResponse])
async def appsflyer_attribution(body: AppsFlyerAttributionRequest, request: Request, response: Response,
                                tenant: Annotated[Tenant, Depends(get_tenant)],
                                events: Annotated[EventLog, Depends(get_event_log)]):
    """AppsFlyer SDK 转化数据回调"""
    if not body.appsflyer_id or not body.customer_user_id:
        response.status_code = 400
        return APIResponse(success=False, code=400, message="appsflyer_id_and_customer_user_id_required")

    conversion = body.model_dump(exclude={"appsflyer_id", "customer_user_id", "app_version"})
    try:
        async with await get_session() as session:
            result = await record_appsflyer_attribution(
                session, body.appsflyer_id, body.customer_user_id, conversion, tenant, _secret(),
                ip=client_ip(request),
                user_agent=request.headers.get("user-agent", ""),
                app_version=body.app_version,
            )
    except Exception as e:
        error(f"AppsFlyer attribution error: {e}")
        await events.log("error", f"AppsFlyer attribution failed: {e}", {"appsflyer_id": body.appsflyer_id})
        response.status_code = 500
        return APIResponse(success=False, code=500, message="attribution_failed")

    await events.log("attribution", f"AppsFlyer attribution: {body.media_source or 'organic'}", {
        "appsflyer_id": body.appsflyer_id,
        "media_source": body.media_source,
        "campaign": body.campaign,
        "push_sub": result.push_sub,
        "final_url": result.final_url,
    })
    return AttributionResponse(**result.to_response())


@router.get("/attribution/stats", dependencies=[Depends(require_api_key)])
async def attribution_stats(response: Response):
    try:
        async with await get_session() as session:
            return await store.attribution_stats(session)
    except Exception as e:
        error(f"Error getting attribution stats: {e}")
        response.status_code = 500
        return APIResponse(success=False, code=500, message="stats_failed")
