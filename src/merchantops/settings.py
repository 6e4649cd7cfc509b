from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    # Orchestrator API
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "test", "production"] = "development"

    # Tool host
    server_host: str = "0.0.0.0"
    server_port: int = 8100
    server_name: str = "Unified Merchant Operations Platform"
    server_version: str = "1.0.0"
    session_idle_timeout_seconds: float = 1800.0  # 30 minutes
    heartbeat_interval_seconds: float = 15.0
    max_protocol_errors: int = 10

    # Shared by both sides of the session
    mcp_api_key: str | None = None
    mcp_server_url: str = "http://localhost:8100/mcp/sse"
    mcp_transport: Literal["sse", "inprocess"] = "sse"
    mcp_connect_timeout_seconds: float = 10.0
    mcp_request_timeout_seconds: float = 60.0

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_iterations: int = 10
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"

    cors_origins: str = "*"

    redis_url: str | None = None
    history_ttl_seconds: int = 86400  # 24 hours
    history_max_messages: int = 50

    agent_system_prompt: str = (
        "You are an assistant for merchant operations teams. You help with "
        "customer lookups, order management, refunds and business analytics "
        "across Shopify, Salesforce, Klaviyo and Cin7.\n\n"
        "Guidelines:\n"
        " - Use the available tools to fetch real data before answering.\n"
        " - When looking up a customer, use aggregate_customer_context to get a "
        "unified view across platforms.\n"
        " - Before processing a refund, confirm the order details and amount.\n"
        " - Summarize tool results in plain language instead of pasting raw JSON.\n"
        " - If a tool fails, explain what went wrong and suggest a next step.\n\n"
        "Keep your answers precise and professional."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings()
    return _SETTINGS
