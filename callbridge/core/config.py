"""
Configuration management for CallBridge
Uses Pydantic Settings for environment variable management
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Twilio Configuration
    twilio_account_sid: Optional[str] = Field(default=None)
    twilio_auth_token: Optional[str] = Field(default=None)

    # ElevenLabs Conversational AI Configuration
    elevenlabs_api_key: Optional[str] = Field(default=None)
    elevenlabs_agent_ids: str = Field(default="")
    elevenlabs_api_base_url: str = Field(default="https://api.elevenlabs.io")
    elevenlabs_http_timeout: float = Field(default=30.0)
    default_first_message: str = Field(default="Hello, how can I help you today?")

    # GoHighLevel CRM Configuration
    ghl_client_id: Optional[str] = Field(default=None)
    ghl_client_secret: Optional[str] = Field(default=None)
    ghl_redirect_uri: Optional[str] = Field(default=None)
    ghl_api_base_url: str = Field(default="https://services.leadconnectorhq.com")
    ghl_http_timeout: float = Field(default=30.0)

    # Storage Configuration
    storage_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_max_connections: int = Field(default=50)
    session_ttl_seconds: int = Field(default=4 * 60 * 60)

    # Application Settings
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    environment: str = Field(default="development")

    # Server Configuration
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)
    server_domain: str = Field(default="localhost:8000")

    # CORS Settings
    allowed_origins: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def default_agent_ids(self) -> List[str]:
        """Parse configured ElevenLabs agent ids from comma-separated string"""
        return [a.strip() for a in self.elevenlabs_agent_ids.split(",") if a.strip()]

    @property
    def public_base_url(self) -> str:
        return f"https://{self.server_domain}"

    @property
    def media_stream_url(self) -> str:
        return f"wss://{self.server_domain}/media-stream"

    @property
    def outbound_media_stream_url(self) -> str:
        return f"wss://{self.server_domain}/outbound-media-stream"

    def missing_required(self) -> List[str]:
        """Names of required settings that are not configured"""
        required = {
            "TWILIO_ACCOUNT_SID": self.twilio_account_sid,
            "TWILIO_AUTH_TOKEN": self.twilio_auth_token,
            "ELEVENLABS_API_KEY": self.elevenlabs_api_key,
        }
        return [name for name, value in required.items() if not value]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
