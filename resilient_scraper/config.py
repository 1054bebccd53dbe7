"""
Runtime settings and the named thresholds used across the engine.
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


# Selector health. A locator below HEALTH_CRITICAL_RATE (or failing
# HEALTH_CRITICAL_STREAK times in a row) is treated as broken; below
# HEALTH_DEGRADED_RATE (or HEALTH_DEGRADED_STREAK in a row) it is drifting.
HEALTH_DEGRADED_RATE = 0.7
HEALTH_CRITICAL_RATE = 0.5
HEALTH_DEGRADED_STREAK = 3
HEALTH_CRITICAL_STREAK = 5
# Rate-based statuses and alerts need this many attempts first (cold starts).
HEALTH_MIN_SAMPLES = 5
# Outcomes kept per locator entry for the recent success rate.
HEALTH_HISTORY_WINDOW = 20

# Recursive JSON walk bound for API and embedded-script payloads.
JSON_MAX_DEPTH = 15

# Excerpt caps for model prompts.
DISCOVERY_HTML_LIMIT = 30000
EXTRACTION_HTML_LIMIT = 25000
EXTRACTION_TEXT_LIMIT = 3000
AUDIT_PROMPT_LIMIT = 5000
UNKNOWN_PAGE_TEXT_LIMIT = 2000

# ContentHash keeps only this much of the normalized body.
CONTENT_HASH_BODY_LIMIT = 100

# "view all N comments" values outside (0, EXPECTED_COUNT_MAX) are mis-parses.
EXPECTED_COUNT_MAX = 10000

# Suggested back-off handed to the caller for rate-limited pages.
RATE_LIMIT_RETRY_AFTER_MS = 60000

# Stored fingerprint hashes are truncated to this many hex characters.
FINGERPRINT_HASH_LENGTH = 16


def _as_bool(val: Optional[str], default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "y", "on"}


def _as_float(val: Optional[str], default: float) -> float:
    try:
        return float(val) if val is not None else default
    except ValueError:
        return default


@dataclass
class Settings:
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1/chat/completions"
    llm_timeout_seconds: float = 60.0
    registry_db_url: Optional[str] = None
    log_level: str = "INFO"
    headless: bool = True

    # Tunable copies of the module constants
    degraded_rate: float = HEALTH_DEGRADED_RATE
    critical_rate: float = HEALTH_CRITICAL_RATE
    degraded_streak: int = HEALTH_DEGRADED_STREAK
    critical_streak: int = HEALTH_CRITICAL_STREAK
    min_samples: int = HEALTH_MIN_SAMPLES
    history_window: int = HEALTH_HISTORY_WINDOW
    json_max_depth: int = JSON_MAX_DEPTH

    @property
    def llm_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            openai_base_url=os.getenv("OPENAI_BASE_URL", cls.openai_base_url),
            llm_timeout_seconds=_as_float(os.getenv("LLM_TIMEOUT_SECONDS"), cls.llm_timeout_seconds),
            registry_db_url=os.getenv("REGISTRY_DB_URL") or None,
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            headless=_as_bool(os.getenv("HEADLESS"), True),
        )
