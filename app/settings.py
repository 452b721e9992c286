from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    DATABASE_URL: str
    SESSION_SECRET_KEY: str
    TOKEN_MAX_AGE: int = 86400

    GENERAL_ROOM_ID: str = "general"
    GENERAL_ROOM_NAME: str = "General"
    HISTORY_LIMIT: int = 50
    MAX_MESSAGE_LENGTH: int = 500

    CORS_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env")

settings = Settings()
