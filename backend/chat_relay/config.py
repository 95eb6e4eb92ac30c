"""应用配置"""
from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from typing import List, Literal, Optional
from urllib.parse import quote_plus
from pathlib import Path

from sqlalchemy.engine import URL, make_url


class Settings(BaseSettings):
    """应用配置类"""

    # 应用信息
    APP_NAME: str = "Chat Relay"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    PORT: int = 3000

    # 模型网关配置（GATEWAY_API_KEY 必填，缺失时启动失败）
    GATEWAY_BASE_URL: str = "https://usageflows.info"
    GATEWAY_API_KEY: str
    CHAT_MODEL: str = "openai/gpt-5-pro"
    GATEWAY_TIMEOUT_MS: int = 120000

    # 规则模板目录
    RULES_DIR: str = str(Path(__file__).resolve().parents[2] / "rules")

    # CORS配置
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # 持久化配置：AZURE 或 POSTGRES，连接参数缺失时不落库
    CONNECTION_TYPE: Literal["AZURE", "POSTGRES"] = "AZURE"
    POSTGRES_SQL_CONNECTION_STRING: Optional[str] = None
    POSTGRES_SSL: bool = True
    AZURE_SQL_CONNECTION_STRING: Optional[str] = None
    AZURE_SQL_SERVER: Optional[str] = None
    AZURE_SQL_DATABASE: Optional[str] = None
    AZURE_SQL_USER: Optional[str] = None
    AZURE_SQL_PASSWORD: Optional[str] = None
    AZURE_SQL_ODBC_DRIVER: str = "ODBC Driver 18 for SQL Server"

    @model_validator(mode="before")
    @classmethod
    def treat_empty_env_as_unset(cls, data):
        """
        将空字符串环境变量按“未配置”处理。
        这样 .env 中留空不会覆盖默认值，也避免复杂类型解析报错。
        """
        if not isinstance(data, dict):
            return data

        cleaned = dict(data)
        for field_name, field in cls.model_fields.items():
            default = field.default

            # 仅当字段本身有可用默认值时，空字符串才回退到默认值
            if default in (None, ""):
                continue

            if cleaned.get(field_name) == "":
                cleaned.pop(field_name, None)

        return cleaned

    @field_validator("CONNECTION_TYPE", mode="before")
    @classmethod
    def normalize_connection_type(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """获取CORS允许的源列表"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def default_model(self) -> Optional[str]:
        model = (self.CHAT_MODEL or "").strip()
        return model or None

    @property
    def postgres_url(self) -> Optional[URL]:
        """Postgres 连接串转换为 asyncpg 驱动 URL；未配置返回 None"""
        raw = (self.POSTGRES_SQL_CONNECTION_STRING or "").strip()
        if not raw:
            return None
        url = make_url(raw)
        # libpq 的 sslmode 参数 asyncpg 不认识，TLS 由 POSTGRES_SSL 控制
        return url.set(drivername="postgresql+asyncpg").difference_update_query(["sslmode"])

    @property
    def azure_sql_url(self) -> Optional[URL]:
        """Azure SQL 连接 URL（aioodbc）；完整 ODBC 连接串优先，其次是分项参数"""
        raw = (self.AZURE_SQL_CONNECTION_STRING or "").strip()
        if raw:
            if "driver=" not in raw.lower():
                raw = f"Driver={{{self.AZURE_SQL_ODBC_DRIVER}}};{raw}"
            return make_url(f"mssql+aioodbc:///?odbc_connect={quote_plus(raw)}")

        parts = (self.AZURE_SQL_SERVER, self.AZURE_SQL_DATABASE, self.AZURE_SQL_USER, self.AZURE_SQL_PASSWORD)
        if not all(p and p.strip() for p in parts):
            return None
        return URL.create(
            "mssql+aioodbc",
            username=self.AZURE_SQL_USER,
            password=self.AZURE_SQL_PASSWORD,
            host=self.AZURE_SQL_SERVER,
            database=self.AZURE_SQL_DATABASE,
            query={
                "driver": self.AZURE_SQL_ODBC_DRIVER,
                "Encrypt": "yes",
                "TrustServerCertificate": "no",
            },
        )

    class Config:
        env_file = (".env", "backend/.env")
        case_sensitive = True
        extra = "ignore"


# 全局配置实例
settings = Settings()
