"""
MarketFlow Configuration Management
遵循约束：环境变量前缀 MF__
"""
from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MF__",
        case_sensitive=False
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="marketflow")
    db_user: str = Field(default="marketflow")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=20)
    db_max_overflow: int = Field(default=40)
    slow_query_threshold_ms: int = Field(default=100)
    # 直接指定连接串（测试使用 sqlite+aiosqlite）
    database_url_override: Optional[str] = Field(default=None)

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/mf/v1")
    api_title: str = Field(default="MarketFlow API")
    api_version: str = Field(default="1.0.0")
    api_debug: bool = Field(default=False)

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text
    # 外部调用耗时日志目录，未配置时只写入结构化日志
    timing_log_dir: Optional[str] = Field(default=None)

    # 业务规则
    commission_rate: Decimal = Field(default=Decimal("0.07"))
    return_window_days: int = Field(default=10)
    default_item_weight_kg: Decimal = Field(default=Decimal("0.5"))
    currency: str = Field(default="INR")

    # 支付网关
    payment_key_id: Optional[str] = Field(default=None)
    payment_key_secret: Optional[str] = Field(default=None)
    payment_base_url: str = Field(default="https://api.payments.example.com/v1")
    payment_timeout_seconds: float = Field(default=15.0)
    payment_fetch_retries: int = Field(default=2)

    # 打款（需同时配置支付网关密钥）
    payout_account_number: Optional[str] = Field(default=None)
    payout_base_url: Optional[str] = Field(default=None)

    # 物流承运商
    carrier_api_key: Optional[str] = Field(default=None)
    carrier_base_url: str = Field(default="https://api.carrier.example.com/v1/external")
    carrier_timeout_seconds: float = Field(default=30.0)
    carrier_tracking_url_template: str = Field(default="https://track.carrier.example.com/{awb}")
    carrier_store_name: str = Field(default="DEFAULT")

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v):
        """确保 API 前缀符合规范"""
        if not v.startswith("/api/mf/"):
            raise ValueError("API prefix must start with /api/mf/")
        return v

    @field_validator("commission_rate")
    @classmethod
    def validate_commission_rate(cls, v):
        if v < 0 or v >= 1:
            raise ValueError("Commission rate must be in [0, 1)")
        return v

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def sync_database_url(self) -> str:
        """构建同步数据库连接字符串（用于 Alembic）"""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def payments_enabled(self) -> bool:
        return bool(self.payment_key_id and self.payment_key_secret)

    @property
    def payouts_enabled(self) -> bool:
        return self.payments_enabled and bool(self.payout_account_number)

    @property
    def carrier_enabled(self) -> bool:
        return bool(self.carrier_api_key)


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
