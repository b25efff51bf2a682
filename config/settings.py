"""
Configuration loader for the VoiceRelay service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_SYSTEM_PROMPT = (
    "You are a voice assistant. "
    "Your interface with users will be voice. "
    "You should use short and concise responses, and avoid usage of unpronounceable punctuation."
)


@dataclass
class TranscriptionConfig:
    region: str = ""
    api_key: str = ""
    default_locale: str = "en-US"
    api_version: str = "2024-11-15"
    endpoint: str = ""                  # overrides the region-derived URL when set
    timeout_s: float = 30.0
    retry_attempts: int = 1             # 1 = no retry


@dataclass
class GenerationConfig:
    provider: str = "openai"            # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass
class SynthesisConfig:
    api_key: str = ""
    voice_id: str = ""
    model_id: str = "eleven_flash_v2_5"
    output_format: str = "pcm_16000"
    base_url: str = "wss://api.elevenlabs.io/v1/text-to-speech"
    stability: float = 0.75
    similarity_boost: float = 1.0
    style: float = 0.0
    speed: float = 1.0
    keepalive_s: float = 10.0


@dataclass
class SessionConfig:
    max_message_bytes: int = 1024 * 1024
    default_language: str = "en-US"
    destroy_timeout_s: float = 5.0


@dataclass
class Settings:
    app_name: str = "VoiceRelay"
    debug: bool = False
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw mapping, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "VOICERELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "transcription" in raw:
            settings.transcription = _section(TranscriptionConfig, raw["transcription"])
        if "generation" in raw:
            settings.generation = _section(GenerationConfig, raw["generation"])
        if "synthesis" in raw:
            settings.synthesis = _section(SynthesisConfig, raw["synthesis"])
        if "session" in raw:
            settings.session = _section(SessionConfig, raw["session"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
