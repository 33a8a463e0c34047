"""
Configuration management and loading.

Handles plan quotas, application settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml


API_KEY_ENV_VAR = "OPENROUTER_API_KEY"
DEFAULT_MODEL = "deepseek/deepseek-r1-0528"
DEFAULT_DB_PATH = "ai_chat_ledger.db"


class PlanTier(Enum):
    """Subscription tiers with a fixed quota bundle."""
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


@dataclass(frozen=True)
class PlanLimits:
    """Token quotas for a single plan tier."""
    daily_tokens: int
    monthly_tokens: int
    max_tokens_per_request: int

    def __post_init__(self):
        """Validate limits are positive."""
        if self.daily_tokens <= 0:
            raise ValueError("daily_tokens must be > 0")
        if self.monthly_tokens <= 0:
            raise ValueError("monthly_tokens must be > 0")
        if self.max_tokens_per_request <= 0:
            raise ValueError("max_tokens_per_request must be > 0")


# Static quota table - not editable at runtime
PLAN_LIMITS: Dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        daily_tokens=10_000,
        monthly_tokens=100_000,
        max_tokens_per_request=1_000,
    ),
    PlanTier.PRO: PlanLimits(
        daily_tokens=100_000,
        monthly_tokens=1_000_000,
        max_tokens_per_request=4_000,
    ),
    PlanTier.PREMIUM: PlanLimits(
        daily_tokens=500_000,
        monthly_tokens=5_000_000,
        max_tokens_per_request=8_000,
    ),
}


@dataclass(frozen=True)
class ModelOption:
    """A completion model offered to a plan."""
    id: str
    name: str
    description: str
    tokens_per_request: int


SYSTEM_PROMPTS: Dict[str, str] = {
    "general": "You are a helpful AI assistant. Provide clear, accurate, and helpful responses.",
    "coding": (
        "You are an expert software developer. Help with coding questions, provide clean "
        "code examples, and explain programming concepts clearly."
    ),
    "business": (
        "You are a business consultant. Provide strategic advice, help with business "
        "planning, and offer insights on entrepreneurship and growth."
    ),
    "creative": (
        "You are a creative writing assistant. Help with storytelling, content creation, "
        "and creative projects. Be imaginative and inspiring."
    ),
    "academic": (
        "You are an academic tutor. Explain concepts clearly, help with research, and "
        "provide educational guidance across various subjects."
    ),
    "saas": (
        "You are a SaaS expert. Help with software-as-a-service business models, product "
        "development, user experience, and scaling strategies."
    ),
}

DEFAULT_SYSTEM_PROMPT = SYSTEM_PROMPTS["general"]


def parse_plan(plan: Union[PlanTier, str]) -> PlanTier:
    """Resolve a plan tier from an enum member or its string value.

    Raises:
        ValueError: If the tier is unknown
    """
    if isinstance(plan, PlanTier):
        return plan
    if not isinstance(plan, str):
        raise ValueError(f"Unknown plan tier: {plan!r}")
    try:
        return PlanTier(plan.strip().lower())
    except ValueError:
        valid = [tier.value for tier in PlanTier]
        raise ValueError(f"Unknown plan tier: {plan!r} (expected one of: {valid})")


def get_plan_limits(plan: Union[PlanTier, str]) -> PlanLimits:
    """Get quota limits for a plan tier.

    Unknown tiers are rejected rather than falling back to the free plan.
    """
    return PLAN_LIMITS[parse_plan(plan)]


def available_models(plan: Union[PlanTier, str]) -> List[ModelOption]:
    """List completion models a plan may use, with its per-request allowance."""
    limits = get_plan_limits(plan)
    return [
        ModelOption(
            id=DEFAULT_MODEL,
            name="DeepSeek R1",
            description="Advanced reasoning model",
            tokens_per_request=limits.max_tokens_per_request,
        )
    ]


@dataclass(frozen=True)
class CompletionSettings:
    """Connection and sampling settings for the completion API."""
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = DEFAULT_MODEL
    temperature: float = 0.7
    max_tokens: int = 4000
    timeout_seconds: float = 60.0
    site_url: str = ""
    site_name: str = ""

    def __post_init__(self):
        """Validate completion settings."""
        if not self.base_url:
            raise ValueError("base_url cannot be empty")
        if not self.model:
            raise ValueError("model cannot be empty")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    db_path: str = DEFAULT_DB_PATH
    log_level: str = "INFO"
    api_key: Optional[str] = None


_ALLOWED_SECTIONS = {
    "completion": {
        "base_url", "model", "temperature", "max_tokens",
        "timeout_seconds", "site_url", "site_name",
    },
    "storage": {"db_path"},
    "logging": {"level"},
}

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def load_settings(path: Optional[str] = None) -> Settings:
    """Load application settings from an optional YAML file and the environment.

    The API key is only ever read from the environment so it never lands in a
    config file.

    Args:
        path: Optional path to a YAML settings file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If the given config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    api_key = os.environ.get(API_KEY_ENV_VAR) or None

    if path is None:
        return Settings(api_key=api_key)

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return Settings(api_key=api_key)
    if not isinstance(raw_config, dict):
        raise ValueError("Settings file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(_ALLOWED_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, allowed_keys in _ALLOWED_SECTIONS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        unknown = set(data.keys()) - allowed_keys
        if unknown:
            raise ValueError(f"Unknown keys in {name}: {unknown}")
        sections[name] = data

    completion = _parse_completion(sections["completion"])

    db_path = sections["storage"].get("db_path", DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'db_path' in storage must be a non-empty string")

    level = sections["logging"].get("level", "INFO")
    if not isinstance(level, str) or level.upper() not in _LOG_LEVELS:
        raise ValueError(f"'level' in logging must be one of: {sorted(_LOG_LEVELS)}")

    return Settings(
        completion=completion,
        db_path=db_path,
        log_level=level.upper(),
        api_key=api_key,
    )


def _parse_completion(data: Dict) -> CompletionSettings:
    """Parse and type-check the completion section."""
    for key in ("temperature", "timeout_seconds"):
        if key in data and not isinstance(data[key], (int, float)):
            raise ValueError(f"'{key}' in completion must be a number")
    if "max_tokens" in data and not isinstance(data["max_tokens"], int):
        raise ValueError("'max_tokens' in completion must be an integer")
    for key in ("base_url", "model", "site_url", "site_name"):
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'{key}' in completion must be a string")

    values = dict(data)
    for key in ("temperature", "timeout_seconds"):
        if key in values:
            values[key] = float(values[key])
    return CompletionSettings(**values)
