import os
from pathlib import Path


class Settings:
    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data/receipts.db")
    DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))

    # Directories
    RECEIPTS_DIR = Path(os.getenv("RECEIPTS_DIR", "./data/receipts"))

    # API Settings
    API_V1_STR = "/api"
    PROJECT_NAME = "Receipt Reconciler"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Upload limits
    MAX_STATEMENT_SIZE = 10 * 1024 * 1024  # 10MB
    MAX_RECEIPT_UPLOAD_SIZE = 15 * 1024 * 1024  # 15MB

    # Automation
    RETRO_CHUNK_SIZE = 100
    RETRO_TIME_BUDGET_SECONDS = float(os.getenv("RETRO_TIME_BUDGET_SECONDS", "12"))
    AI_JOB_CHUNK_SIZE = 10
    PENDING_REFRESH_LIMIT = 500

    # Scheduled jobs
    CRON_SECRET = os.getenv("CRON_SECRET", "")
    CRON_STALE_RUN_MINUTES = 30
    CRON_TIMEZONE = "Europe/London"

    # OpenAI (receipt classification)
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    OPENAI_RECEIPTS_MODEL = os.getenv("OPENAI_RECEIPTS_MODEL", "gpt-4o-mini")
    OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "30"))

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    def ensure_directories(self):
        """Create the data and receipt directories if missing"""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)
        self.RECEIPTS_DIR.mkdir(parents=True, exist_ok=True)


settings = Settings()
