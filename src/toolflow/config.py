# config.py
# Flow-wide defaults and OpenAI connection settings.
#
# Values come from the environment, with a .env file loaded first.
# Variables already set in the environment win over the .env file.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class FlowConfig(BaseModel):
    """Defaults applied to every step unless the step overrides them."""

    api_key: str | None = Field(default=None, repr=False)
    base_url: str = DEFAULT_BASE_URL
    default_model: str = DEFAULT_MODEL
    default_temperature: float | None = None
    default_max_tokens: int | None = None
    timeout: float | None = Field(default=None, description="Per-request timeout in seconds.")

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "FlowConfig":
        """
        Build a config from OPENAI_* environment variables.

        Unparseable numeric values are ignored rather than raising.
        """
        load_dotenv(dotenv_path)
        return cls(
            api_key=os.getenv("OPENAI_API_KEY") or None,
            base_url=os.getenv("OPENAI_BASE_URL") or DEFAULT_BASE_URL,
            default_model=os.getenv("OPENAI_DEFAULT_MODEL") or DEFAULT_MODEL,
            default_temperature=_optional_float("OPENAI_DEFAULT_TEMPERATURE"),
            default_max_tokens=_optional_int("OPENAI_DEFAULT_MAX_TOKENS"),
            timeout=_optional_float("OPENAI_TIMEOUT"),
        )
