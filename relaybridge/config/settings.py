"""Runtime settings."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", extra="ignore", populate_by_name=True)

    app_name: str = "RelayBridge"
    env: str = "dev"
    log_level: str = "info"
    # 空串表示只输出到 stderr
    log_file: str = "logs/relaybridge.log"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, validation_alias=AliasChoices("RELAY_PORT", "PORT", "port"))

    # 与 app server 共享的密钥：入站 webhook 校验 + 出站 delivery 认证
    shared_secret: str = Field(
        default="",
        validation_alias=AliasChoices("RELAY_SHARED_SECRET", "VM_INTERNAL_SECRET", "shared_secret"),
    )
    webhook_path: str = "/api/message"
    max_request_body_bytes: int = 1024 * 1024

    completion_base_url: str = Field(
        default="http://localhost:3001",
        validation_alias=AliasChoices("RELAY_COMPLETION_BASE_URL", "LLM_PROXY_URL", "completion_base_url"),
    )
    completion_path: str = "/v1/responses"
    completion_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("RELAY_COMPLETION_API_KEY", "LLM_PROXY_API_KEY", "completion_api_key"),
    )
    completion_timeout_seconds: float = 120.0
    default_model: str = "claude-haiku-4-5-20251001"
    default_max_tokens: int = Field(default=4096, ge=1)

    app_server_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("RELAY_APP_SERVER_URL", "APP_SERVER_URL", "app_server_url"),
    )
    delivery_path: str = "/api/response"
    delivery_timeout_seconds: float = 30.0

    # <=0 表示不限制并发中的后台任务数
    max_inflight_tasks: int = 0
    # 开启后同一 uid（缺省为 messageId）的触发按到达顺序串行处理
    serialize_per_user: bool = False
    shutdown_drain_seconds: float = 10.0


settings = Settings()
