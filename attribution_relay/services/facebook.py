"""
Facebook Conversions API
按点击上的像素凭证回传 APP_INSTALL / COMPLETE_REGISTRATION / PURCHASE
"""

import time
from typing import Any, Dict, Optional

from ..config import get_setting
from ..utils.events import EventLog
from ..utils.logger import info
from .connector import http_send

APP_INSTALL = "APP_INSTALL"
COMPLETE_REGISTRATION = "COMPLETE_REGISTRATION"
PURCHASE = "PURCHASE"

GRAPH_BASE = "https://graph.facebook.com"


def build_event(event_name: str, ip: str, user_agent: str, fbclid: Optional[str] = None,
                value: Optional[float] = None, currency: Optional[str] = None,
                now_ms: Optional[int] = None, config: Dict[str, Any] = None) -> Dict[str, Any]:
    """组装单条 CAPI 事件；仅 value > 0 时带 custom_data"""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)

    user_data: Dict[str, Any] = {
        "client_ip_address": ip,
        "client_user_agent": user_agent,
    }
    if fbclid:
        user_data["fbc"] = f"fb.1.{now_ms}.{fbclid}"

    event: Dict[str, Any] = {
        "event_name": event_name,
        "event_time": now_ms // 1000,
        "action_source": get_setting("facebook.action_source", "website", config),
        "event_source_url": get_setting("facebook.event_source_url", "", config),
        "user_data": user_data,
    }

    if value is not None and value > 0:
        event["custom_data"] = {
            "value": value,
            "currency": currency or "USD",
        }
    return event


def events_url(pixel_id: str, config: Dict[str, Any] = None) -> str:
    version = get_setting("facebook.graph_version", "v18.0", config)
    return f"{GRAPH_BASE}/{version}/{pixel_id}/events"


class FacebookConversions:
    """CAPI 发送器；失败只记录，不向上抛"""

    def __init__(self, events: EventLog, config: Dict[str, Any] = None) -> None:
        self._events = events
        self._config = config
        self._timeout_ms = int(get_setting("facebook.timeout_ms", 5000, config))

    async def send_event(self, event_name: str, pixel_id: Optional[str], access_token: Optional[str],
                         ip: str, user_agent: str, fbclid: Optional[str] = None,
                         value: Optional[float] = None, currency: Optional[str] = None,
                         click_id: Optional[str] = None) -> bool:
        if not pixel_id or not access_token:
            info(f"No Facebook credentials, skipping {event_name}")
            return False

        url = events_url(pixel_id, self._config)
        payload = {
            "data": [build_event(event_name, ip, user_agent, fbclid, value, currency, config=self._config)],
            "access_token": access_token,
        }

        status, body = await http_send(
            "POST", url,
            headers={"Content-Type": "application/json"},
            body=payload,
            timeout_ms=self._timeout_ms,
        )
        ok = 200 <= status < 300

        if not ok:
            await self._events.log("error", f"Facebook API Error: {event_name}", {
                "pixel_id": pixel_id,
                "click_id": click_id,
                "status": status,
                "error": body,
            })

        await self._events.log(
            "postback",
            f"FB Outbound{'' if ok else ' Failed'}: {event_name}",
            {
                "click_id": click_id,
                "url": url,
                "method": "POST",
                "payload": payload,
                "response_status": status,
                "response_body": body,
            },
        )
        return ok

    async def send_app_install(self, click: Any, ip: str, user_agent: str) -> bool:
        return await self.send_event(
            APP_INSTALL, click.fb_id, click.fb_token, ip, user_agent,
            fbclid=click.fbclid, click_id=click.click_id,
        )

    async def send_registration(self, click: Any) -> bool:
        return await self.send_event(
            COMPLETE_REGISTRATION, click.fb_id, click.fb_token,
            click.ip_address, click.user_agent,
            fbclid=click.fbclid, click_id=click.click_id,
        )

    async def send_purchase(self, click: Any, value: Optional[float], currency: Optional[str]) -> bool:
        return await self.send_event(
            PURCHASE, click.fb_id, click.fb_token,
            click.ip_address, click.user_agent,
            fbclid=click.fbclid, value=value, currency=currency, click_id=click.click_id,
        )
