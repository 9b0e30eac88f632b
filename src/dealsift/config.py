"""Application settings loaded from environment variables."""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables prefixed with DS_."""

    # Database
    database_url: str = ""

    # Candidate window and thresholds
    window_days: int = 7
    admission_threshold: float = 0.55
    review_threshold: float = 0.6
    auto_merge_threshold: float = 0.92

    # Notification priority kicks in above this many pending candidates
    high_priority_pending: int = 10

    # Run behaviour
    max_workers: int = 8
    run_timeout_seconds: float | None = None
    allow_same_platform: bool = False

    model_config = {"env_file": ".env", "env_prefix": "DS_"}

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        for name in ("admission_threshold", "review_threshold", "auto_merge_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                msg = f"{name} must be within [0, 1], got {value}"
                raise ValueError(msg)
        if self.admission_threshold > self.auto_merge_threshold:
            msg = "admission_threshold must not exceed auto_merge_threshold"
            raise ValueError(msg)
        if self.review_threshold > self.auto_merge_threshold:
            msg = "review_threshold must not exceed auto_merge_threshold"
            raise ValueError(msg)
        if self.window_days < 1:
            msg = "window_days must be at least 1"
            raise ValueError(msg)
        if self.max_workers < 1:
            msg = "max_workers must be at least 1"
            raise ValueError(msg)
        return self


def get_settings() -> Settings:
    """Return a Settings instance built from the current environment."""
    return Settings()
