# config/settings.py
import os
import sys
from dotenv import load_dotenv
from pydantic import ValidationError, Field
from pydantic_settings import BaseSettings
from util.enums import Environment


if os.getenv("APP_ENV", Environment.DEV) == Environment.DEV:
    load_dotenv()


class Settings(BaseSettings):
    # App
    APP_ENV: str = Field(..., validation_alias="APP_ENV")
    REDIS_URL: str = Field(..., validation_alias="REDIS_URL")
    JOB_RETENTION_SECONDS: int = Field(
        default=24 * 60 * 60, validation_alias="JOB_RETENTION_SECONDS"
    )

    # CORS & Limits
    ALLOWED_ORIGIN: str = Field(..., validation_alias="ALLOWED_ORIGIN")
    RATE_LIMIT_TIMES: int = Field(default=120, validation_alias="RATE_LIMIT_TIMES")
    RATE_LIMIT_SECONDS: int = Field(default=60, validation_alias="RATE_LIMIT_SECONDS")
    TRUST_PROXY: bool = Field(default=False, validation_alias="TRUST_PROXY")
    AUTH_URL: str = Field(default="/auth/google", validation_alias="AUTH_URL")

    # Extraction
    EXTRACTION_STRATEGIES: str = Field(
        default="ytdlp,direct,subprocess", validation_alias="EXTRACTION_STRATEGIES"
    )
    EXTRACT_ATTEMPT_TIMEOUT_SECONDS: float = Field(
        default=300.0, validation_alias="EXTRACT_ATTEMPT_TIMEOUT_SECONDS"
    )
    EXTRACT_STALL_TIMEOUT_SECONDS: float = Field(
        default=60.0, validation_alias="EXTRACT_STALL_TIMEOUT_SECONDS"
    )
    EXTRACT_FALLBACK_DELAY_SECONDS: float = Field(
        default=2.0, validation_alias="EXTRACT_FALLBACK_DELAY_SECONDS"
    )
    METADATA_TIMEOUT_SECONDS: float = Field(
        default=20.0, validation_alias="METADATA_TIMEOUT_SECONDS"
    )
    SCRATCH_DIR: str = Field(default="", validation_alias="SCRATCH_DIR")
    YTDLP_BINARIES: str = Field(
        default="yt-dlp,youtube-dl", validation_alias="YTDLP_BINARIES"
    )
    YTDLP_COOKIES_FILE: str = Field(default="", validation_alias="YTDLP_COOKIES_FILE")
    YTDLP_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # Pipeline
    MAX_CONCURRENT_UPLOADS: int = Field(
        default=4, validation_alias="MAX_CONCURRENT_UPLOADS"
    )
    PROGRESS_WRITE_INTERVAL_SECONDS: float = Field(
        default=0.5, validation_alias="PROGRESS_WRITE_INTERVAL_SECONDS"
    )
    BROADCAST_INTERVAL_SECONDS: float = Field(
        default=1.0, validation_alias="BROADCAST_INTERVAL_SECONDS"
    )
    CHUNK_SIZE_BYTES: int = Field(default=256 * 1024, validation_alias="CHUNK_SIZE_BYTES")

    # Storage
    STORAGE_BACKEND: str = Field(default="drive", validation_alias="STORAGE_BACKEND")
    LOCAL_STORAGE_DIR: str = Field(default="storage", validation_alias="LOCAL_STORAGE_DIR")
    DRIVE_API_URL: str = "https://www.googleapis.com/drive/v3"
    DRIVE_UPLOAD_URL: str = "https://www.googleapis.com/upload/drive/v3/files"
    DRIVE_FOLDER_NAME: str = Field(default="Music Player", validation_alias="DRIVE_FOLDER_NAME")
    DRIVE_CHUNK_BYTES: int = Field(
        default=32 * 256 * 1024, validation_alias="DRIVE_CHUNK_BYTES"
    )
    DRIVE_RETRY_SECONDS: int = Field(default=60, validation_alias="DRIVE_RETRY_SECONDS")

    # Logging knobs
    LOGGER_NAME: str = "tubevault"
    LOG_LEVEL: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    LOG_TO_FILE: bool = Field(default=False, validation_alias="LOG_TO_FILE")
    LOG_DIR: str = Field(default="logs", validation_alias="LOG_DIR")
    LOG_FILE_NAME: str = Field(default="app.log", validation_alias="LOG_FILE_NAME")
    LOG_MAX_BYTES: int = Field(
        default=50 * 1024 * 1024, validation_alias="LOG_MAX_BYTES"
    )
    LOG_BACKUP_COUNT: int = Field(default=5, validation_alias="LOG_BACKUP_COUNT")

    @property
    def strategy_order(self) -> list[str]:
        return [s.strip() for s in self.EXTRACTION_STRATEGIES.split(",") if s.strip()]

    @property
    def ytdlp_binaries(self) -> list[str]:
        return [s.strip() for s in self.YTDLP_BINARIES.split(",") if s.strip()]


try:
    settings = Settings()
except ValidationError as e:
    print("❌ Missing/invalid environment variables:", file=sys.stderr)
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", []))
        msg = err.get("msg", "")
        print(f" - {loc}: {msg}", file=sys.stderr)
    sys.exit(1)
except Exception as e:
    print(f"❌ Settings initialization failed: {e}", file=sys.stderr)
    sys.exit(1)
