from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Any, Dict, Optional


class Tenant(BaseModel):
    """请求域名解析出的租户（应用）配置，请求期内只读"""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    app_id: str
    domain: str = ""
    team_id: str = ""
    bundle_id: str = ""
    app_name: Optional[str] = None
    api_key: Optional[str] = None
    app_store_url: Optional[str] = None
    tracker_campaign_url: Optional[str] = None
    appsflyer_dev_key: Optional[str] = None
    appsflyer_enabled: bool = False
    is_default: bool = False


class CheckinRequest(BaseModel):
    """iOS SDK 首次启动上报（checkin）"""
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "idfv": "6F1B2C3D-0000-4000-8000-112233445566",
            "idfa": "00000000-0000-0000-0000-000000000000",
            "app_version": "1.4.0",
            "os_version": "16.2",
            "device_model": "iPhone14,5",
            "user_agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 16_2 like Mac OS X) Mobile/15E148 Safari/604.1"
        }
    })

    idfv: Optional[str] = Field(None, description="IDFV，必填")
    idfa: Optional[str] = Field(None, description="IDFA（用户授权后才有）")
    app_version: Optional[str] = None
    os_version: Optional[str] = None
    device_model: Optional[str] = None
    user_agent: Optional[str] = Field(None, description="不传则取请求头 User-Agent")


class VerifyLinkRequest(BaseModel):
    """后台自检一条投放链接"""
    model_config = ConfigDict(json_schema_extra={
        "example": {"url": "https://track.example.com/t?sub1=spring_sale&fb_id=123"}
    })

    url: Optional[str] = None


class AppsFlyerAttributionRequest(BaseModel):
    """AppsFlyer SDK 转化数据回调"""
    appsflyer_id: Optional[str] = None
    customer_user_id: Optional[str] = Field(None, description="即 IDFV")
    media_source: Optional[str] = None
    campaign: Optional[str] = None
    af_sub1: Optional[str] = None
    af_sub2: Optional[str] = None
    af_sub3: Optional[str] = None
    af_sub4: Optional[str] = None
    af_sub5: Optional[str] = None
    app_version: Optional[str] = None


class AttributionResponse(BaseModel):
    success: bool = True
    attributed: bool
    final_url: Optional[str] = None
    push_sub: str
    os_user_key: str
    click_id: Optional[str] = None
    campaign_data: Optional[Dict[str, Any]] = None


class APIResponse(BaseModel):
    """统一错误/简单响应：success / code / message"""
    success: bool = Field(..., description="是否成功")
    code: int = Field(..., description="状态码：200=成功；失败与HTTP状态码一致")
    message: str = Field(..., description="描述信息")


class HealthResponse(BaseModel):
    ok: bool = Field(..., description="服务是否正常")
    timestamp: int = Field(..., description="当前时间戳")
    version: str = Field(..., description="服务版本")
    db_ok: Optional[bool] = Field(None, description="数据库连接状态")
    debounce_ok: Optional[bool] = Field(None, description="去抖组件状态")


class AppCreate(BaseModel):
    app_id: str
    domain: str
    team_id: str
    bundle_id: str
    app_name: str
    app_store_url: Optional[str] = None
    tracker_campaign_url: Optional[str] = None
    appsflyer_dev_key: Optional[str] = None
    appsflyer_enabled: bool = False
    active: bool = True

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, value: str) -> str:
        # 与 Host 头的匹配方式一致：小写、去空白
        return value.strip().lower()


class AppUpdate(BaseModel):
    """部分更新：只改传入的字段"""
    app_id: Optional[str] = None
    domain: Optional[str] = None
    team_id: Optional[str] = None
    bundle_id: Optional[str] = None
    app_name: Optional[str] = None
    app_store_url: Optional[str] = None
    tracker_campaign_url: Optional[str] = None
    appsflyer_dev_key: Optional[str] = None
    appsflyer_enabled: Optional[bool] = None
    active: Optional[bool] = None

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value is not None else None
