#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
配置检查脚本

功能：
- 加载本地多文件配置（main.yaml + 租户文件）
- 打印归因参数与静态租户
- 用两条 UA 模拟相似度打分，判断是否会过阈值
- 按域名预览落地链接（自然量）

用法: python tools/check_config.py [click_ua] [sdk_ua] [host]
"""

import sys
import json
import os
from dataclasses import asdict
from typing import Any, Dict

DEFAULT_CLICK_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148 Safari/604.1"
)
DEFAULT_SDK_UA = "App/1.0 CFNetwork/1399 Darwin/22.1.0 (iPhone; iPhone OS 16_2)"


def load_local_config() -> Dict[str, Any]:
    """加载本地多文件配置"""
    try:
        sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
        from attribution_relay.config import CONFIG
        return CONFIG
    except Exception as e:
        print(f"❌ 加载本地配置失败: {e}")
        print("💡 请确保：")
        print("   1. config/main.yaml 文件存在")
        print("   2. 所有 required 的租户配置文件存在")
        print("   3. 设置了 API_SECRET_KEY（或 settings.api_secret_key）")
        sys.exit(1)


def main(click_ua: str = DEFAULT_CLICK_UA, sdk_ua: str = DEFAULT_SDK_UA, host: str = ""):
    print("🔍 加载本地多文件配置...")
    cfg = load_local_config()
    print("✅ 配置加载成功\n")

    from attribution_relay.config import attribution_settings, debounce_settings
    from attribution_relay.services.matcher import user_agent_similarity
    from attribution_relay.services.tenants import TenantResolver, normalize_host
    from attribution_relay.services.tracker import TrackerParams, build_tracker_url

    settings = attribution_settings(cfg)
    print("attribution:")
    print(json.dumps(asdict(settings), ensure_ascii=False, indent=2))
    print("debounce:")
    print(json.dumps(asdict(debounce_settings(cfg)), ensure_ascii=False, indent=2))
    print()

    resolver = TenantResolver(cfg)
    print(f"静态租户 ({len(resolver.static_tenants)}):")
    for tenant in resolver.static_tenants:
        print(f"  - {tenant.app_id}: {tenant.domain} bundle={tenant.bundle_id} "
              f"appsflyer={'on' if tenant.appsflyer_enabled else 'off'}")
    print(f"默认租户: {resolver.default.app_id} bundle={resolver.default.bundle_id}\n")

    score = user_agent_similarity(click_ua, sdk_ua, settings.weights)
    print("UA 相似度：")
    print(f"  click: {click_ua}")
    print(f"  sdk:   {sdk_ua}")
    print(f"  score: {score}  threshold: {settings.min_similarity}")

    problems = []
    if score < settings.min_similarity:
        problems.append("两条 UA 的相似度低于阈值，同 IP 的点击也不会被归因")

    # 只看静态租户；库里的应用需要数据库连接
    domain = normalize_host(host)
    tenant = next((t for t in resolver.static_tenants if t.domain == domain), resolver.default)
    if domain and tenant is resolver.default:
        problems.append(f"域名 '{domain}' 没有匹配的静态租户，将使用默认租户")
    if not tenant.team_id or not tenant.bundle_id:
        problems.append(f"租户 '{tenant.app_id}' 缺少 team_id/bundle_id，AASA 将返回 404")

    url = build_tracker_url(TrackerParams(os_user_key="<os_user_key>", push_sub="organic"), tenant, cfg)
    print(f"\n自然量落地链接预览 ({tenant.app_id}):\n  {url}")

    if problems:
        print("\n诊断：")
        for p in problems:
            print(f"  - {p}")
    else:
        print("\n诊断：配置看起来正确。")


if __name__ == "__main__":
    args = sys.argv[1:]
    main(
        args[0] if len(args) > 0 else DEFAULT_CLICK_UA,
        args[1] if len(args) > 1 else DEFAULT_SDK_UA,
        args[2] if len(args) > 2 else "",
    )
