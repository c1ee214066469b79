from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from google import genai
from google.genai import types

from src.core.field_crypto import mask_secret
from src.core.sanitize_ai import strip_code_fences
from src.rythmiq.config import GenAIConfig, get_config


log = logging.getLogger(__name__)


class GenAIError(Exception):
    pass


def api_key(cfg: Optional[GenAIConfig] = None) -> Optional[str]:
    cfg = cfg or get_config().genai
    v = os.environ.get(cfg.api_key_env)
    return v.strip() if v and v.strip() else None


def is_configured(cfg: Optional[GenAIConfig] = None) -> bool:
    return api_key(cfg) is not None


def generate_text(prompt: str, *, cfg: Optional[GenAIConfig] = None) -> str:
    """Single-turn call to Gemini. Raises GenAIError on a missing key, transport failure or empty reply."""
    cfg = cfg or get_config().genai
    key = api_key(cfg)
    if key is None:
        raise GenAIError(f"{cfg.api_key_env} is missing")
    log.debug("Gemini request model=%s key=%s", cfg.model, mask_secret(key))
    try:
        client = genai.Client(api_key=key)
        response = client.models.generate_content(
            model=cfg.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                temperature=cfg.temperature,
                max_output_tokens=cfg.max_output_tokens,
            ),
        )
    except Exception as e:
        raise GenAIError(f"Gemini request failed: {type(e).__name__}: {e}") from e
    text = response.text
    if not text:
        raise GenAIError("Gemini returned an empty response")
    return text


def parse_json(text: str) -> Any:
    try:
        return json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise GenAIError(f"Model output is not valid JSON: {e}") from e


def generate_json(prompt: str, *, cfg: Optional[GenAIConfig] = None) -> Any:
    return parse_json(generate_text(prompt, cfg=cfg))
