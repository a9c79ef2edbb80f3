"""
Central configuration for the Medhira consultation service
"""

from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"


class ModelName(str, Enum):
    GPT_4 = "gpt-4"
    GPT_4O_MINI = "gpt-4o-mini"
    GPT_4O = "gpt-4o"


class STTSpeechModel(str, Enum):
    BEST = "best"
    NANO = "nano"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # API Configuration
    api_title: str = Field(default="Medhira API")
    api_description: str = Field(default="Doctor-patient consultation transcription and summarization")
    api_version: str = Field(default="1.0.0")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=5002)
    api_secret_key: str = Field(...)
    api_keys: List[str] = Field(default=[])

    # External Service APIs (empty selects the deterministic fallbacks)
    openai_api_key: str = Field(default="")
    assemblyai_api_key: str = Field(default="")
    assemblyai_api_base_url: str = Field(default="https://api.assemblyai.com")
    google_drive_api_base_url: str = Field(default="https://www.googleapis.com")
    drive_folder_name: str = Field(default="Patient Summaries")

    # Persistence
    store_backend: StoreBackend = StoreBackend.MEMORY
    sqlite_db_path: str = Field(default="./data/medhira.sqlite3")
    upload_dir: str = Field(default="./uploads")

    # Rate Limiting
    rate_limit_requests: int = Field(default=10)
    rate_limit_window: int = Field(default=60)  # seconds

    # Audio Upload Limits
    max_file_size_mb: int = Field(default=50)
    supported_audio_formats: List[str] = Field(
        default=["audio/mpeg", "audio/wav", "audio/mp4", "audio/m4a", "audio/webm", "audio/ogg"]
    )

    # Timeouts and background jobs
    stt_timeout: float = Field(default=120.0)
    llm_timeout: float = Field(default=60.0)
    max_retries: int = Field(default=3)
    job_timeout_seconds: float = Field(default=0.0)  # 0 disables
    max_concurrent_jobs: int = Field(default=0)  # 0 means unbounded
    fallback_delay_seconds: float = Field(default=2.0)

    # STT Configuration
    stt_language: str = Field(default="en")
    stt_speech_model: STTSpeechModel = STTSpeechModel.BEST

    # LLM Configuration
    llm_model: str = Field(default=ModelName.GPT_4.value)
    llm_temperature: float = Field(default=0.1)
    llm_max_tokens: int = Field(default=1500)

    # CORS Configuration
    cors_origins: List[str] = Field(
        default=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default=["GET", "POST", "PUT", "DELETE"])
    cors_allow_headers: List[str] = Field(default=["*"])

    # Security
    token_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24 * 7)
    jwt_issuer: str = Field(default="medhira")
    data_encryption_key: str = Field(...)

    # Monitoring
    enable_metrics: bool = Field(default=True)

    # Audit Logging
    audit_log_enabled: bool = Field(default=True)

    @property
    def openai_configured(self) -> bool:
        """True when the OpenAI key looks like a real secret key."""
        key = (self.openai_api_key or "").strip()
        return key.startswith("sk-") and len(key) > 20

    @property
    def assemblyai_configured(self) -> bool:
        key = (self.assemblyai_api_key or "").strip()
        return len(key) >= 20

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


# Global settings instance
settings = Settings()
