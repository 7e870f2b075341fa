#!/usr/bin/env python3
"""
归因中转服务启动脚本：依赖、配置、数据库参数检查通过后拉起 uvicorn / gunicorn
"""

import os
import sys
import subprocess
import argparse

APP_PATH = "attribution_relay.main:app"
REQUIRED_MODULES = ("fastapi", "uvicorn", "sqlalchemy", "httpx", "yaml", "loguru", "redis", "psutil")


def check_dependencies():
    missing = []
    for name in REQUIRED_MODULES:
        try:
            __import__(name)
        except ImportError:
            missing.append(name)
    if missing:
        print(f"❌ 缺少依赖: {', '.join(missing)}")
        print("请运行: pip install -e .")
        return False
    print("✅ 依赖齐全")
    return True


def check_config():
    """只做静态检查；租户文件的完整校验在服务启动加载配置时进行"""
    if os.getenv("MAIN_CONFIG_URL") and not os.getenv("CONFIG_DIR"):
        print(f"✅ 使用远程主配置: {os.getenv('MAIN_CONFIG_URL')}")
        return True

    config_dir = os.getenv("CONFIG_DIR", "./config")
    main_file = os.path.join(config_dir, "main.yaml")
    if not os.path.isfile(main_file):
        print(f"❌ 找不到主配置文件: {main_file}")
        print("💡 设置 CONFIG_DIR，或创建 ./config/main.yaml，或设置 MAIN_CONFIG_URL")
        return False

    import yaml
    try:
        with open(main_file, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        print(f"❌ 配置文件格式错误: {e}")
        return False

    settings = config.get("settings") or {}
    if not settings.get("api_secret_key") and not os.getenv("API_SECRET_KEY"):
        print("❌ 未配置 api_secret_key（或环境变量 API_SECRET_KEY）")
        return False

    tenants = config.get("tenant_configs") or []
    backend = (settings.get("debounce") or {}).get("backend", "memory")
    print(f"✅ 配置检查通过: {main_file}")
    print(f"   静态租户: {len(tenants)} 个  去抖后端: {backend}")
    return True


def check_database():
    if os.getenv("DATABASE_URL"):
        print("✅ 数据库: DATABASE_URL")
        return True
    missing = [k for k in ("MYSQL_HOST", "MYSQL_USER", "MYSQL_PASSWORD", "MYSQL_DB") if not os.getenv(k)]
    if missing:
        print(f"❌ 缺少数据库环境变量: {', '.join(missing)}")
        return False
    print(f"✅ 数据库: MySQL {os.getenv('MYSQL_HOST')}")
    return True


def build_command(args):
    if args.production:
        # 多 worker 时每个进程各有一份内存去抖表，需要 redis 后端才能跨进程去重
        return [
            "gunicorn", APP_PATH,
            "-w", str(args.workers),
            "-k", "uvicorn.workers.UvicornWorker",
            "--bind", f"{args.host}:{args.port}",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ]
    cmd = [sys.executable, "-m", "uvicorn", APP_PATH, "--host", args.host, "--port", str(args.port)]
    if args.reload:
        cmd.append("--reload")
    return cmd


def main():
    parser = argparse.ArgumentParser(description="归因中转服务启动脚本")
    parser.add_argument("--host", default="0.0.0.0", help="监听地址")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")), help="监听端口")
    parser.add_argument("--workers", type=int, default=1, help="工作进程数（仅生产模式）")
    parser.add_argument("--reload", action="store_true", help="开启热重载（开发模式）")
    parser.add_argument("--production", action="store_true", help="生产模式（使用gunicorn）")
    args = parser.parse_args()

    print("🚀 归因中转服务启动检查...")
    if not (check_dependencies() and check_config() and check_database()):
        sys.exit(1)

    if args.production:
        try:
            import gunicorn  # type: ignore  # noqa: F401
        except ImportError:
            print("❌ 生产模式需要安装 gunicorn: pip install -e .[prod]")
            sys.exit(1)

    cmd = build_command(args)
    print(f"\n🎯 执行命令: {' '.join(cmd)}")
    if not args.production:
        print(f"API文档: http://{args.host}:{args.port}/docs")
    subprocess.run(cmd)


if __name__ == "__main__":
    main()
