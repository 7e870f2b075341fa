from typing import Annotated

from fastapi import APIRouter, Depends, Response

from ..schemas import APIResponse, Tenant
from .deps import get_tenant

router = APIRouter()

UNIVERSAL_LINK_PATHS = ["/api/v1/track/click", "/t", "/click", "/track", "/*"]


@router.get("/.well-known/apple-app-site-association")
async def apple_app_site_association(response: Response, tenant: Annotated[Tenant, Depends(get_tenant)]):
    """按请求域名生成 AASA，供 Universal Links 使用"""
    if not tenant.team_id or not tenant.bundle_id:
        response.status_code = 404
        return APIResponse(success=False, code=404, message="app_not_configured_for_domain")
    return {
        "applinks": {
            "apps": [],
            "details": [
                {
                    "appID": f"{tenant.team_id}.{tenant.bundle_id}",
                    "paths": UNIVERSAL_LINK_PATHS,
                }
            ],
        }
    }
