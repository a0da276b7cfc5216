from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    env: str = "dev"
    database_url: str = "sqlite:///./data/voyaj.db"

    scheduler_enabled: bool = True
    nudge_sweep_minutes: int = 60
    # Shrinks nudge intervals from hours to minutes for manual testing
    testing_mode: bool = False

    ai_provider: str = "none"
    ai_api_key: str = ""
    ai_model: Optional[str] = None
    ai_ollama_url: str = "http://localhost:11434"
    ai_max_attempts: int = 3
    ai_retry_delay: float = 1.0
    classifier_timeout_seconds: float = 15.0

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    min_members: int = 2
    majority_ratio: float = 0.6
    planning_timeout_hours: float = 12
    voting_timeout_hours: float = 48
    just_entered_seconds: float = 5.0
    stage_change_dedup_seconds: float = 5.0
    max_cascade_steps: int = 10
    max_suggestions_per_member: int = 3

    def model_post_init(self, __context):
        if self.env == "prod" and not (self.twilio_account_sid and self.twilio_auth_token):
            raise ValueError(
                "Production requires TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN"
            )
        if not 0 < self.majority_ratio <= 1:
            raise ValueError("MAJORITY_RATIO must be in (0, 1]")

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
