import os
from pathlib import Path

# 配置在导入 attribution_relay 时加载，必须先于任何包内导入
os.environ["CONFIG_DIR"] = str(Path(__file__).parent / "config")
os.environ["API_SECRET_KEY"] = "test-secret"
os.environ["ENABLE_LOGGING"] = "false"
os.environ.pop("ADMIN_TOKEN", None)
os.environ.pop("MAIN_CONFIG_URL", None)

import httpx
import pytest

from attribution_relay.db import cleanup_old_engines, get_session
from attribution_relay.schemas import Tenant

CLIENT_IP = "203.0.113.7"

IPHONE_16_2 = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148 Safari/604.1"
)
IPHONE_15_0 = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 15_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148 Safari/604.1"
)
SDK_UA_16_2 = "DemoApp/1.0 CFNetwork/1399 Darwin/22.1.0 (iPhone; iPhone OS 16_2) Mobile Safari"
ANDROID_UA = "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 Chrome/120.0"


@pytest.fixture(autouse=True)
def database_url(tmp_path, monkeypatch):
    """每个用例一个独立的 SQLite 文件"""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
async def db():
    yield
    await cleanup_old_engines()


@pytest.fixture
async def session(db):
    async with await get_session() as s:
        yield s


@pytest.fixture
def tenant():
    return Tenant(
        app_id="demo",
        domain="demo.test",
        team_id="TEAM123456",
        bundle_id="com.demo.app",
        app_name="Demo",
        api_key="demo-key",
        app_store_url="https://apps.apple.com/app/id123",
        tracker_campaign_url="https://tracker.test/demo",
    )


@pytest.fixture
def app():
    from attribution_relay.main import create_app
    return create_app()


@pytest.fixture
async def client(app, db):
    transport = httpx.ASGITransport(app=app, client=(CLIENT_IP, 50000))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    await app.state.dispatcher.drain()


@pytest.fixture
def outbound(monkeypatch):
    """拦截所有出站 HTTP，记录调用并返回预设结果"""

    class FakeOutbound:
        def __init__(self):
            self.calls = []
            self.status = 200
            self.body = {"events_received": 1}

        async def __call__(self, method, url, headers=None, body=None, timeout_ms=5000):
            self.calls.append({
                "method": method,
                "url": url,
                "headers": headers or {},
                "body": body,
                "timeout_ms": timeout_ms,
            })
            return self.status, self.body

    fake = FakeOutbound()
    monkeypatch.setattr("attribution_relay.services.facebook.http_send", fake)
    monkeypatch.setattr("attribution_relay.services.appsflyer.http_send", fake)
    monkeypatch.setattr("attribution_relay.services.forwarder.http_send", fake)
    return fake
