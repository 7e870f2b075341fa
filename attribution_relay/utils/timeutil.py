from datetime import datetime, timezone


def utcnow() -> datetime:
    """库里统一存无时区的 UTC 时间"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
