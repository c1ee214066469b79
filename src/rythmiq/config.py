from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


def _env_flag(name: str, default: bool = False) -> bool:
    v = (os.environ.get(name) or "").strip().lower()
    if not v:
        return default
    return v in {"1", "true", "yes", "y", "on"}


class RateLimitConfig(BaseModel):
    window_s: int = 60
    # requests per window, keyed by request path
    limits: dict[str, int] = Field(
        default_factory=lambda: {
            "/api/ai/chat": 30,
            "/api/ai/search": 20,
            "/api/ai/insights": 10,
            "/api/ai/predict": 5,
            "/api/ai/jarvis": 10,
        }
    )


class CacheConfig(BaseModel):
    forecast_ttl_hours: float = 6.0
    tax_estimate_ttl_hours: float = 24.0


class ThresholdConfig(BaseModel):
    safety_buffer: float = 2000.0
    emergency_threshold: float = 1000.0
    emi_buffer: float = 1000.0
    transaction_lookback: int = 100


class OtpConfig(BaseModel):
    threshold: float = 500.0
    enforce: bool = False
    expiry_minutes: int = 5
    max_attempts: int = 5
    expose_codes: bool = False


class GenAIConfig(BaseModel):
    model: str = "gemini-2.0-flash"
    temperature: float = 0.5
    max_output_tokens: int = 1024
    api_key_env: str = "GEMINI_API_KEY"


class AppConfig(BaseModel):
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    otp: OtpConfig = Field(default_factory=OtpConfig)
    genai: GenAIConfig = Field(default_factory=GenAIConfig)


def _candidate_paths() -> list[Path]:
    explicit = (os.environ.get("RYTHMIQ_CONFIG") or "").strip()
    if explicit:
        return [Path(explicit)]
    paths = [Path("rythmiq.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".rythmiq" / "rythmiq.yaml")
    return paths


def _apply_env(cfg: AppConfig) -> AppConfig:
    raw_threshold = (os.environ.get("OTP_THRESHOLD") or "").strip()
    if raw_threshold:
        try:
            cfg.otp.threshold = float(raw_threshold)
        except ValueError:
            pass
    cfg.otp.enforce = _env_flag("ENFORCE_OTP", cfg.otp.enforce)
    production = (os.environ.get("APP_ENV") or "").strip().lower() == "production"
    cfg.otp.expose_codes = _env_flag("EXPOSE_OTP_CODES", cfg.otp.expose_codes) or not production
    model = (os.environ.get("GEMINI_MODEL") or "").strip()
    if model:
        cfg.genai.model = model
    return cfg


def load_config() -> tuple[AppConfig, Optional[str]]:
    for p in _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            return _apply_env(AppConfig.model_validate(data.get("rythmiq") or data)), str(p)
    return _apply_env(AppConfig()), None


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    cfg, _path = load_config()
    return cfg
