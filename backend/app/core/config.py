from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "Sanchar Relay"
    ENVIRONMENT: str = "development"
    API_V1_STR: str = "/api/v1"

    CORS_ORIGINS: List[str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if isinstance(v, str):
            v = v.strip("[").strip("]").strip('"').strip("'")
            if not v:
                return []
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, list):
            return v
        raise ValueError(v)

    # Session store / directory (async SQLAlchemy URL)
    DATABASE_URL: str = "sqlite+aiosqlite:///./sanchar_relay.db"
    AUTO_CREATE_TABLES: bool = True

    # Push notifications (Expo push API, no FCM credentials needed)
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    PUSH_TIMEOUT_SECONDS: float = 10.0

    # Call buffering
    PENDING_CALL_TTL_SECONDS: float = 30.0
    PENDING_CALL_SWEEP_SECONDS: float = 15.0

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file="relay_config.env",
        env_file_encoding="utf-8"
    )

settings = Settings()
