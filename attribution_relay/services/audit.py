"""
事件审计落库：postback → postback_logs，error → error_logs
作为 EventLog 的 sink 使用
"""

import json
from typing import Any

from ..db import get_session
from ..models import ErrorLog, PostbackLog
from ..utils.events import LogEvent


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def postback_row(event: LogEvent) -> PostbackLog:
    details = event.details or {}
    return PostbackLog(
        click_id=details.get("click_id") or None,
        url=details.get("url") or "",
        method=details.get("method") or "GET",
        payload=_to_text(details.get("payload") or {}),
        response_status=int(details.get("response_status") or 0),
        response_body=_to_text(details.get("response_body")),
    )


def error_row(event: LogEvent) -> ErrorLog:
    details = event.details or {}
    return ErrorLog(
        type=str(details.get("error_type") or "general"),
        message=event.summary,
        stack=details.get("stack") or "",
        metadata_json=_to_text(details),
    )


async def persist_event(event: LogEvent) -> None:
    if event.type == "postback":
        row = postback_row(event)
    elif event.type == "error":
        row = error_row(event)
    else:
        return
    async with await get_session() as session:
        session.add(row)
        await session.commit()
