import os
import yaml
import httpx
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from pathlib import Path

from .utils.logger import info, warning, error

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


class MultiConfigLoader:
    """多文件配置加载器：main.yaml + 每个租户一个文件"""

    def __init__(self, main_config_url: str = None, local_config_dir: str = None):
        self.main_config_url = main_config_url
        self.local_config_dir = Path(local_config_dir) if local_config_dir else Path("config")
        self.client = httpx.Client(timeout=30.0)

    def load_config(self) -> Dict[str, Any]:
        """加载完整配置"""
        try:
            main_config = self._load_main_config()
            tenants = self._load_tenant_configs(main_config.get("tenant_configs", []) or [])

            final_config = {
                "settings": main_config.get("settings", {}) or {},
                "tenants": tenants,
            }
            self._apply_env_overrides(final_config["settings"])
            self._validate_config(final_config)

            info(f"✅ 配置加载成功: {len(tenants)} 个静态租户")
            return final_config

        except Exception as e:
            error(f"❌ 配置加载失败: {e}")
            raise

    def _load_main_config(self) -> Dict[str, Any]:
        """加载主配置文件"""
        if self.main_config_url:
            info(f"📥 正在下载主配置文件: {self.main_config_url}")
            response = self.client.get(self.main_config_url)
            response.raise_for_status()
            config = yaml.safe_load(response.text)
        else:
            main_file = self.local_config_dir / "main.yaml"
            if not main_file.exists():
                raise FileNotFoundError(f"主配置文件不存在: {main_file}")

            info(f"📁 正在加载本地主配置文件: {main_file}")
            with open(main_file, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)

        if not isinstance(config, dict) or "settings" not in config:
            raise ValueError("主配置文件缺少必要字段: settings")

        return config

    def _load_tenant_configs(self, tenant_config_list: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """加载静态租户配置文件"""
        tenants = []
        loaded_ids = set()
        loaded_domains = set()

        for config_def in tenant_config_list:
            declared_id = config_def.get("id")
            try:
                if not declared_id:
                    warning(f"⚠️  租户配置缺少ID字段: {config_def}")
                    continue

                if declared_id in loaded_ids:
                    raise ValueError(f"租户ID重复: {declared_id}")
                loaded_ids.add(declared_id)

                if not config_def.get("enabled", True):
                    info(f"⏸️  跳过已禁用的租户: {declared_id}")
                    continue

                source = config_def.get("source", "local")
                if source == "remote":
                    url = config_def["url"]
                    response = self.client.get(url)
                    response.raise_for_status()
                    tenant_config = yaml.safe_load(response.text)
                    info(f"📥 远程加载租户配置: {declared_id} <- {url}")

                elif source == "local":
                    path = config_def["path"]
                    full_path = self.local_config_dir / path
                    if not full_path.exists():
                        if config_def.get("required", False):
                            raise FileNotFoundError(f"必需的租户配置文件不存在: {full_path}")
                        warning(f"⚠️  可选的租户配置文件不存在: {full_path}")
                        continue

                    with open(full_path, 'r', encoding='utf-8') as f:
                        tenant_config = yaml.safe_load(f)
                    info(f"📁 本地加载租户配置: {declared_id} <- {path}")

                else:
                    warning(f"⚠️  未知的配置源类型: {source}")
                    continue

                file_id = (tenant_config or {}).get("id")
                if file_id != declared_id:
                    raise ValueError(
                        f"租户配置ID不匹配: 声明ID='{declared_id}', 文件ID='{file_id}'"
                    )

                self._validate_tenant_config(tenant_config)

                domain = tenant_config["domain"].lower()
                if domain in loaded_domains:
                    raise ValueError(f"租户域名重复: {domain}")
                loaded_domains.add(domain)

                tenants.append(tenant_config)

            except Exception as e:
                error_msg = f"❌ 加载租户配置失败 {declared_id}: {e}"
                error(error_msg)
                if config_def.get("required", False):
                    raise Exception(error_msg) from e
                continue

        return tenants

    def _validate_tenant_config(self, config: Dict[str, Any]) -> None:
        required_fields = ["id", "domain", "bundle_id"]
        missing_fields = [f for f in required_fields if not config.get(f)]
        if missing_fields:
            raise ValueError(f"租户配置缺少必要字段: {', '.join(missing_fields)}")

    def _apply_env_overrides(self, settings: Dict[str, Any]) -> None:
        """密钥类配置以环境变量为准，不落在 YAML 里"""
        api_secret = os.getenv("API_SECRET_KEY")
        if api_secret:
            settings["api_secret_key"] = api_secret
        admin_token = os.getenv("ADMIN_TOKEN")
        if admin_token:
            settings["admin_token"] = admin_token
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            settings.setdefault("debounce", {})["redis_url"] = redis_url

    def _validate_config(self, config: Dict[str, Any]) -> None:
        settings = config["settings"]
        if not settings.get("api_secret_key"):
            raise ValueError("settings.api_secret_key 未配置（或设置环境变量 API_SECRET_KEY）")

        attribution = settings.get("attribution", {}) or {}
        min_similarity = float(attribution.get("min_similarity", 0.7))
        if not 0.0 <= min_similarity <= 1.0:
            raise ValueError(f"attribution.min_similarity 必须在 [0, 1] 区间: {min_similarity}")
        if int(attribution.get("window_hours", 24)) <= 0:
            raise ValueError("attribution.window_hours 必须为正整数")

        backend = (settings.get("debounce", {}) or {}).get("backend", "memory")
        if backend not in ("memory", "redis"):
            raise ValueError(f"未知的 debounce.backend: {backend}")

    def __del__(self):
        if hasattr(self, 'client'):
            self.client.close()


def load_config() -> Dict[str, Any]:
    """
    统一配置加载器

    优先级:
    1. 环境变量 CONFIG_DIR 指定的配置目录
    2. 默认配置目录 ./config
    3. 环境变量 MAIN_CONFIG_URL 指定的远程主配置
    """
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        config_path = Path(config_dir)
        if config_path.exists() and config_path.is_dir():
            info(f"📁 使用环境变量指定的配置目录: {config_dir}")
            return MultiConfigLoader(local_config_dir=config_dir).load_config()
        raise FileNotFoundError(f"环境变量 CONFIG_DIR 指定的目录不存在: {config_dir}")

    default_config_dir = Path("./config")
    if default_config_dir.exists() and (default_config_dir / "main.yaml").exists():
        info("📁 使用默认配置目录: ./config")
        return MultiConfigLoader(local_config_dir=str(default_config_dir)).load_config()

    main_config_url = os.getenv("MAIN_CONFIG_URL")
    if main_config_url:
        info(f"📥 使用远程主配置: {main_config_url}")
        return MultiConfigLoader(main_config_url=main_config_url).load_config()

    raise FileNotFoundError(
        "未找到配置文件！请确保：\n"
        "1. 设置环境变量 CONFIG_DIR 指向配置目录\n"
        "2. 或者在当前目录下存在 ./config/main.yaml 文件\n"
        "3. 或者设置环境变量 MAIN_CONFIG_URL 指向远程主配置文件"
    )


CONFIG = load_config()


@dataclass(frozen=True)
class SimilarityWeights:
    device_family: float = 0.5
    os_major: float = 0.3
    browser_marker: float = 0.2


@dataclass(frozen=True)
class FraudSettings:
    min_seconds_to_match: float = 5.0
    ip_window_minutes: int = 60
    ip_max_attributions: int = 5


@dataclass(frozen=True)
class AttributionSettings:
    window_hours: int = 24
    min_similarity: float = 0.7
    weights: SimilarityWeights = field(default_factory=SimilarityWeights)
    fraud: FraudSettings = field(default_factory=FraudSettings)


@dataclass(frozen=True)
class DebounceSettings:
    enabled: bool = True
    backend: str = "memory"
    window_ms: int = 2000
    redis_url: Optional[str] = None
    key_prefix: str = "click_debounce:"


def _settings(config: Dict[str, Any] = None) -> Dict[str, Any]:
    return (config or CONFIG).get("settings", {}) or {}


def attribution_settings(config: Dict[str, Any] = None) -> AttributionSettings:
    """从 settings.attribution 构造归因参数（窗口、阈值、权重、风控）"""
    raw = _settings(config).get("attribution", {}) or {}
    weights = raw.get("weights", {}) or {}
    fraud = raw.get("fraud", {}) or {}
    return AttributionSettings(
        window_hours=int(raw.get("window_hours", 24)),
        min_similarity=float(raw.get("min_similarity", 0.7)),
        weights=SimilarityWeights(
            device_family=float(weights.get("device_family", 0.5)),
            os_major=float(weights.get("os_major", 0.3)),
            browser_marker=float(weights.get("browser_marker", 0.2)),
        ),
        fraud=FraudSettings(
            min_seconds_to_match=float(fraud.get("min_seconds_to_match", 5)),
            ip_window_minutes=int(fraud.get("ip_window_minutes", 60)),
            ip_max_attributions=int(fraud.get("ip_max_attributions", 5)),
        ),
    )


def debounce_settings(config: Dict[str, Any] = None) -> DebounceSettings:
    raw = _settings(config).get("debounce", {}) or {}
    return DebounceSettings(
        enabled=bool(raw.get("enabled", True)),
        backend=str(raw.get("backend", "memory")),
        window_ms=int(raw.get("window_ms", 2000)),
        redis_url=raw.get("redis_url"),
        key_prefix=str(raw.get("key_prefix", "click_debounce:")),
    )


def get_setting(path: str, default: Any = None, config: Dict[str, Any] = None) -> Any:
    """按点号路径读取 settings 下的值，如 get_setting("facebook.graph_version")"""
    cur: Any = _settings(config)
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur
