"""
AppsFlyer S2S in-app events
"""

import datetime
from typing import Any, Dict, Optional

from ..config import get_setting
from ..utils.events import EventLog
from ..utils.logger import info
from .connector import http_send

DEFAULT_BASE_URL = "https://api2.appsflyer.com/inappevent"

REGISTRATION = "af_complete_registration"
PURCHASE = "af_purchase"


def appsflyer_base_url(config: Dict[str, Any] = None) -> str:
    return str(get_setting("appsflyer.base_url", DEFAULT_BASE_URL, config)).rstrip("/")


class AppsFlyerError(Exception):
    """S2S 调用失败（非 2xx / 超时 / 连接失败）"""

    def __init__(self, message: str, status: int = 0, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class AppsFlyerEvents:
    """按租户的 dev_key + app_id 发送事件；失败先记审计再抛 AppsFlyerError"""

    def __init__(self, dev_key: str, app_id: str, events: EventLog, config: Dict[str, Any] = None) -> None:
        self.dev_key = dev_key
        self.app_id = app_id
        self._events = events
        self._base_url = appsflyer_base_url(config)
        self._timeout_ms = int(get_setting("appsflyer.timeout_ms", 10000, config))

    @property
    def url(self) -> str:
        return f"{self._base_url}/{self.app_id}"

    def build_payload(self, appsflyer_id: str, idfv: str, event_name: str,
                      event_value: Optional[Dict[str, Any]] = None,
                      event_time: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        event_time = event_time or datetime.datetime.now(datetime.timezone.utc)
        return {
            "appsflyer_id": appsflyer_id,
            "customer_user_id": idfv,
            "eventName": event_name,
            "eventValue": event_value or {},
            "eventTime": event_time.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    async def send_event(self, appsflyer_id: str, idfv: str, event_name: str,
                         event_value: Optional[Dict[str, Any]] = None,
                         click_id: Optional[str] = None) -> int:
        url = self.url
        payload = self.build_payload(appsflyer_id, idfv, event_name, event_value)

        status, body = await http_send(
            "POST", url,
            headers={"authentication": self.dev_key, "Content-Type": "application/json"},
            body=payload,
            timeout_ms=self._timeout_ms,
        )
        ok = 200 <= status < 300

        if not ok:
            await self._events.log("error", f"AppsFlyer S2S Error: {event_name}", {
                "appsflyer_id": appsflyer_id,
                "status": status,
                "error": body,
            })

        await self._events.log(
            "postback",
            f"AppsFlyer Outbound{'' if ok else ' Failed'}: {event_name}",
            {
                "click_id": click_id or appsflyer_id,
                "url": url,
                "method": "POST",
                "payload": payload,
                "response_status": status,
                "response_body": body,
            },
        )

        if not ok:
            raise AppsFlyerError(f"AppsFlyer API error: HTTP {status}", status=status, body=body)

        info(f"AppsFlyer S2S event sent: {event_name} appsflyer_id={appsflyer_id[:10]}... status={status}")
        return status

    async def send_registration(self, appsflyer_id: str, idfv: str) -> int:
        return await self.send_event(appsflyer_id, idfv, REGISTRATION, {
            "af_content_id": "registration",
            "af_registration_method": "email",
        })

    async def send_deposit(self, appsflyer_id: str, idfv: str, amount: float, currency: str = "USD") -> int:
        return await self.send_event(appsflyer_id, idfv, PURCHASE, {
            "af_revenue": amount,
            "af_currency": currency or "USD",
            "af_content_id": "deposit",
            "af_content_type": "first_deposit",
        })
