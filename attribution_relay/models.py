from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Text, DateTime, Index
from .db import Base
from .utils.timeutil import utcnow


class Click(Base):
    """广告点击：一次广告跳转命中，等待被安装归因消费"""
    __tablename__ = "clicks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    click_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    app_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(45))
    user_agent: Mapped[str] = mapped_column(Text, default="")

    fbclid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub3: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub4: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub5: Mapped[str | None] = mapped_column(String(255), nullable=True)
    adsetid: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # 点击级像素凭证（可选）
    fb_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fb_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 消费状态：只允许从 False 翻转一次
    attributed: Mapped[bool] = mapped_column(Boolean, default=False)
    attributed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def has_pixel_credentials(self) -> bool:
        return bool(self.fb_id and self.fb_token)


Index("idx_clicks_ip_created", Click.ip_address, Click.created_at)


class Attribution(Base):
    """安装归因结果（命中或自然量），按 os_user_key 唯一"""
    __tablename__ = "attributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    os_user_key: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    click_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    app_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    ip_address: Mapped[str] = mapped_column(String(45))
    user_agent: Mapped[str] = mapped_column(Text, default="")
    idfa: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idfv: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(20), nullable=True)
    app_version: Mapped[str | None] = mapped_column(String(20), nullable=True)

    push_sub: Mapped[str] = mapped_column(String(255), default="organic")
    final_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    attribution_source: Mapped[str] = mapped_column(String(20), default="facebook")

    # AppsFlyer 来源字段
    appsflyer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    media_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    campaign: Mapped[str | None] = mapped_column(String(255), nullable=True)
    af_sub1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    af_sub2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    af_sub3: Mapped[str | None] = mapped_column(String(255), nullable=True)
    af_sub4: Mapped[str | None] = mapped_column(String(255), nullable=True)
    af_sub5: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


Index("idx_attributions_ip_created", Attribution.ip_address, Attribution.created_at)


class App(Base):
    """租户（应用）配置，按请求域名解析"""
    __tablename__ = "apps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    app_id: Mapped[str] = mapped_column(String(100), unique=True)
    domain: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    team_id: Mapped[str] = mapped_column(String(20))
    bundle_id: Mapped[str] = mapped_column(String(100))
    app_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    api_key: Mapped[str] = mapped_column(String(64), unique=True)
    app_store_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    tracker_campaign_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    appsflyer_dev_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    appsflyer_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PostbackLog(Base):
    """出站/入站回传审计"""
    __tablename__ = "postback_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    click_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    method: Mapped[str] = mapped_column(String(10), default="GET")
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_status: Mapped[int] = mapped_column(Integer, default=0)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(50), default="general")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
