"""Application settings and validation."""

import os
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    MAX_UPLOAD_BYTES: int
    MAX_RECORDING_BYTES: int
    MAX_RESPONSE_BYTES: int
    STORAGE_DIR: Path
    STUDY_CREATION_POINTS: int
    ANALYTICS_CACHE_TTL_SECONDS: int
    EXPORT_JOB_MAX_JOBS: int
    EXPORT_JOB_TTL_SECONDS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BACKEND_ROOT / 'researchhub.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10 MB default
        self.MAX_RECORDING_BYTES = int(os.getenv("MAX_RECORDING_BYTES", str(100 * 1024 * 1024)))
        self.MAX_RESPONSE_BYTES = int(os.getenv("MAX_RESPONSE_BYTES", str(1024 * 1024)))
        self.STORAGE_DIR = Path(os.getenv("STORAGE_DIR", str(BACKEND_ROOT / "data"))).expanduser().resolve()
        self.STUDY_CREATION_POINTS = int(os.getenv("STUDY_CREATION_POINTS", "0"))
        self.ANALYTICS_CACHE_TTL_SECONDS = int(os.getenv("ANALYTICS_CACHE_TTL_SECONDS", "30"))
        self.EXPORT_JOB_MAX_JOBS = int(os.getenv("EXPORT_JOB_MAX_JOBS", "200"))
        self.EXPORT_JOB_TTL_SECONDS = int(os.getenv("EXPORT_JOB_TTL_SECONDS", "86400"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.STUDY_CREATION_POINTS < 0:
            raise RuntimeError("STUDY_CREATION_POINTS must be >= 0")
        if self.MAX_RESPONSE_BYTES <= 0:
            raise RuntimeError("MAX_RESPONSE_BYTES must be positive")


settings = Settings()
