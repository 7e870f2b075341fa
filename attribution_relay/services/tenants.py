"""
租户解析：请求域名 → 应用配置
查找顺序：库里 active 的 App（按 domain）→ 配置文件里的静态租户 → settings.default_tenant
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..config import CONFIG
from ..db import get_session
from ..models import App
from ..schemas import Tenant
from ..utils.logger import debug
from ..utils.security import keys_equal


def normalize_host(host: Optional[str]) -> str:
    """去掉端口并转小写"""
    if not host:
        return ""
    return host.split(":", 1)[0].strip().lower()


def _tenant_from_config(raw: Dict[str, Any], is_default: bool = False) -> Tenant:
    return Tenant(
        app_id=str(raw.get("id") or raw.get("app_id") or "default"),
        domain=str(raw.get("domain", "")).lower(),
        team_id=str(raw.get("team_id", "")),
        bundle_id=str(raw.get("bundle_id", "")),
        app_name=raw.get("app_name"),
        api_key=raw.get("api_key"),
        app_store_url=raw.get("app_store_url"),
        tracker_campaign_url=raw.get("tracker_campaign_url"),
        appsflyer_dev_key=raw.get("appsflyer_dev_key"),
        appsflyer_enabled=bool(raw.get("appsflyer_enabled", False)),
        is_default=is_default,
    )


class TenantResolver:
    """按域名查租户，查不到时回落到默认租户"""

    def __init__(self, config: Dict[str, Any] = None) -> None:
        config = config or CONFIG
        settings = config.get("settings", {}) or {}
        self._static: List[Tenant] = [
            _tenant_from_config(t) for t in (config.get("tenants", []) or [])
            if t.get("enabled", True)
        ]
        default_raw = dict(settings.get("default_tenant", {}) or {})
        default_raw.setdefault("id", "default")
        default_raw.setdefault("api_key", settings.get("api_secret_key"))
        self._default = _tenant_from_config(default_raw, is_default=True)

    @property
    def default(self) -> Tenant:
        return self._default

    @property
    def static_tenants(self) -> List[Tenant]:
        return list(self._static)

    async def resolve(self, host: Optional[str]) -> Tenant:
        domain = normalize_host(host)
        if domain:
            async with await get_session() as session:
                row = (await session.execute(
                    select(App).where(App.domain == domain, App.active.is_(True))
                )).scalar_one_or_none()
            if row is not None:
                return Tenant.model_validate(row)

            for tenant in self._static:
                if tenant.domain == domain:
                    return tenant

        debug(f"No tenant for host '{domain}', using default")
        return self._default

    async def is_valid_api_key(self, api_key: Optional[str]) -> bool:
        """任一 active 应用、静态租户或默认租户的 key 都视为有效"""
        if not api_key:
            return False
        if keys_equal(api_key, self._default.api_key or ""):
            return True
        if any(keys_equal(api_key, t.api_key or "") for t in self._static):
            return True
        async with await get_session() as session:
            row = (await session.execute(
                select(App.id).where(App.api_key == api_key, App.active.is_(True))
            )).first()
        return row is not None
