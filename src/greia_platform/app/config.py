"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./greia_platform.db"

    # Auth / JWT (tokens are issued by the identity provider)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"

    # Commission
    standard_fee_rate_pct: float = 5.0
    introducer_split_pct: float = 20.0
    max_override_rate_pct: float = 10.0
    default_currency: str = "EUR"

    # Matching: how many ranked candidates each request type fans out to
    top_n_property_submission: int = 10
    top_n_valuation: int = 5
    top_n_referral: int = 1
    top_n_booking: int = 1

    # Matching: valuation eligibility floor
    valuation_min_count: int = 5
    valuation_min_rating: float = 4.0

    # Matching: broad region -> comma-separated sub-regions it subsumes
    wildcard_regions: dict[str, str] = {
        "Dublin": "North Dublin,South Dublin,Central Dublin,West Dublin",
    }

    # Payment provider (bookings); empty URL disables payment intents
    payment_api_url: str = ""
    payment_api_key: str = ""

    # Deferred downstream effects
    effect_retry_interval_seconds: int = 300
    effect_max_attempts: int = 5

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def wildcard_region_map(self) -> dict[str, set[str]]:
        """Lower-cased wildcard tag -> lower-cased sub-regions it covers."""
        return {
            tag.strip().lower(): {r.strip().lower() for r in subs.split(",") if r.strip()}
            for tag, subs in self.wildcard_regions.items()
        }


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
