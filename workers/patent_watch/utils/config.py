"""Runtime configuration loaded from the environment."""

import os
import random
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .errors import ConfigurationError


class BackoffPolicy(BaseModel):
    """Fixed-interval polling with an attempt ceiling and optional jitter."""
    interval_seconds: float = 5.0
    max_attempts: int = 60
    jitter_seconds: float = 0.0

    def delay(self) -> float:
        if self.jitter_seconds <= 0:
            return self.interval_seconds
        return self.interval_seconds + random.uniform(0, self.jitter_seconds)

    @property
    def deadline_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts


class RateLimitPolicy(BaseModel):
    """Retry schedule for HTTP 429 responses."""
    max_retries: int = 4
    schedule_seconds: Tuple[float, ...] = (30.0, 60.0, 90.0, 120.0)
    cap_seconds: float = 120.0

    def wait_for(self, attempt: int, retry_after: Optional[str] = None) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        index = min(attempt, len(self.schedule_seconds) - 1)
        return min(self.schedule_seconds[index], self.cap_seconds)


class Settings(BaseModel):
    """Process settings. Secrets have no defaults."""
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_bucket: Optional[str] = None

    uspto_api_key: Optional[str] = None
    uspto_api_base: str = "https://api.uspto.gov/api/v1"

    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    llm_tokens_per_minute: int = 30000

    reader_base_url: str = "https://r.jina.ai/"
    database_url: Optional[str] = None
    nats_url: str = "nats://localhost:4222"
    jwt_secret: Optional[str] = None
    sentry_dsn: Optional[str] = None
    environment: str = "development"

    ocr_polling: BackoffPolicy = Field(default_factory=BackoffPolicy)
    llm_rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)

    portfolio_owner: str = "Inveniam Capital Partners"
    patent_category: str = "Blockchain & Distributed Ledger Technology"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from environment variables (and ``.env`` if present)."""
        if dotenv:
            load_dotenv()
        env = os.environ
        return cls(
            aws_region=env.get("AWS_REGION", "us-east-1"),
            aws_access_key_id=env.get("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=env.get("AWS_SECRET_ACCESS_KEY"),
            s3_bucket=env.get("AWS_S3_BUCKET"),
            uspto_api_key=env.get("USPTO_API_KEY"),
            uspto_api_base=env.get("USPTO_API_BASE", "https://api.uspto.gov/api/v1"),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY"),
            anthropic_model=env.get("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
            llm_tokens_per_minute=int(env.get("LLM_TOKENS_PER_MINUTE", "30000")),
            reader_base_url=env.get("READER_BASE_URL", "https://r.jina.ai/"),
            database_url=env.get("DATABASE_URL"),
            nats_url=env.get("NATS_URL", "nats://localhost:4222"),
            jwt_secret=env.get("SUPABASE_JWT_SECRET"),
            sentry_dsn=env.get("SENTRY_DSN"),
            environment=env.get("ENVIRONMENT", "development"),
            ocr_polling=BackoffPolicy(
                interval_seconds=float(env.get("OCR_POLL_INTERVAL_SECONDS", "5")),
                max_attempts=int(env.get("OCR_POLL_MAX_ATTEMPTS", "60")),
                jitter_seconds=float(env.get("OCR_POLL_JITTER_SECONDS", "0")),
            ),
            llm_rate_limit=RateLimitPolicy(
                max_retries=int(env.get("LLM_MAX_RETRIES", "4")),
            ),
            portfolio_owner=env.get("PORTFOLIO_OWNER", "Inveniam Capital Partners"),
            patent_category=env.get("PATENT_CATEGORY", "Blockchain & Distributed Ledger Technology"),
        )

    def require(self, name: str) -> str:
        """Return a setting or raise if it is unset."""
        value = getattr(self, name)
        if not value:
            raise ConfigurationError(f"{name.upper()} is not configured")
        return value
