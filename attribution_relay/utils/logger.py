"""
Loguru 日志

ENABLE_LOGGING 关闭时所有 helper 都是空函数，热路径（点击记录、checkin）不付格式化开销。
归因明细走 perf_info，DEBUG 级别下单独落 match 文件，便于回放匹配过程。
"""

import os
import sys
import logging as std_logging
from pathlib import Path

from loguru import logger

ENABLE_LOGGING = os.getenv("ENABLE_LOGGING", "false").lower() in ("true", "1", "yes", "on")

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"

# 这些库走标准 logging，统一压到 CRITICAL
_QUIET_LIBS = (
    "uvicorn", "uvicorn.access", "uvicorn.error", "fastapi", "starlette",
    "httpx", "httpcore", "sqlalchemy", "asyncmy", "aiosqlite", "redis", "asyncio",
)


def _quiet_std_logging() -> None:
    for name in _QUIET_LIBS:
        lib_logger = std_logging.getLogger(name)
        lib_logger.setLevel(std_logging.CRITICAL)
        lib_logger.propagate = False


def _is_match_record(record) -> bool:
    return record["extra"].get("match", False)


def setup_logger() -> None:
    logger.remove()
    _quiet_std_logging()
    if not ENABLE_LOGGING:
        return

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(sys.stdout, level=level, format=_CONSOLE_FORMAT, colorize=True,
               enqueue=True, backtrace=True, diagnose=False)
    logger.add(log_dir / "relay_{time:YYYY-MM-DD}.log", level=level, format=_FILE_FORMAT,
               rotation="00:00", retention="7 days", compression="gz", enqueue=True)
    # 错误单独保留一个月，排查回传失败用
    logger.add(log_dir / "relay_error_{time:YYYY-MM-DD}.log", level="ERROR", format=_FILE_FORMAT,
               rotation="00:00", retention="30 days", compression="gz", enqueue=True)
    if level == "DEBUG":
        logger.add(log_dir / "match_{time:YYYY-MM-DD}.log", level="DEBUG",
                   format="{time:HH:mm:ss.SSS} | {message}", filter=_is_match_record,
                   rotation="00:00", retention="3 days", enqueue=True)


setup_logger()


if ENABLE_LOGGING:
    def info(message: str, **kwargs):
        logger.opt(depth=1).info(message, **kwargs)

    def debug(message: str, **kwargs):
        logger.opt(depth=1).debug(message, **kwargs)

    def warning(message: str, **kwargs):
        logger.opt(depth=1).warning(message, **kwargs)

    def error(message: str, **kwargs):
        logger.opt(depth=1).error(message, **kwargs)

    def perf_info(message: str, **kwargs):
        """匹配/落地链接明细"""
        logger.bind(match=True).opt(depth=1).info(message, **kwargs)

else:
    def info(message: str, **kwargs):
        pass

    def debug(message: str, **kwargs):
        pass

    def warning(message: str, **kwargs):
        pass

    def error(message: str, **kwargs):
        pass

    def perf_info(message: str, **kwargs):
        pass
