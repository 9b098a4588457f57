"""
Configuration loader for the FestVoice assistant.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    endpoint: str = ""
    api_key: str = ""
    model: str = ""                     # deployment name on the inference endpoint
    temperature: float = 0.7
    top_p: float = 1.0
    max_tokens: int = 500
    timeout_s: float = 30.0
    system_prompt_template: str = ""


@dataclass
class RetryConfig:
    max_retries: int = 3                # total attempts against the answer service
    backoff_ms: int = 2000              # fixed wait after a 429


@dataclass
class VoiceConfig:
    language: str = "en-IN"
    silence_ms: int = 2000              # quiet period that ends an utterance
    settle_ms: int = 500                # wait after playback before listening again
    pre_speak_ms: int = 300             # wait after cancelling before playback starts
    tick_interval_ms: int = 100
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0


@dataclass
class ProgramInfo:
    name: str
    description: str = ""


@dataclass
class EventConfig:
    name: str = "Tech Fest 2026"
    date: str = "2nd week of January 2026"
    date_range: str = "January 9-15, 2026 (approximately)"
    assistant_name: str = "JARVIS"
    creator: str = "MSC CS 1ST YEAR STUDENT JATHU"
    programs: list[ProgramInfo] = field(default_factory=list)


@dataclass
class Settings:
    app_name: str = "FestVoice"
    debug: bool = False
    log_format: str = "console"         # "console" | "json"
    llm: LLMConfig = field(default_factory=LLMConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    event: EventConfig = field(default_factory=EventConfig)


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


def _unresolved(value: str) -> str:
    """Treat a placeholder whose env var is unset as empty."""
    return "" if re.fullmatch(r'\$\{\w+\}', value or "") else value


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FESTVOICE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_format = raw.get("log_format", settings.log_format)

        if "llm" in raw:
            llm = raw["llm"]
            settings.llm = LLMConfig(
                endpoint=_unresolved(llm.get("endpoint", "")),
                api_key=_unresolved(llm.get("api_key", "")),
                model=_unresolved(llm.get("model", "")),
                temperature=llm.get("temperature", 0.7),
                top_p=llm.get("top_p", 1.0),
                max_tokens=llm.get("max_tokens", 500),
                timeout_s=llm.get("timeout_s", 30.0),
                system_prompt_template=llm.get("system_prompt_template", ""),
            )

        if "retry" in raw:
            r = raw["retry"]
            settings.retry = RetryConfig(
                max_retries=r.get("max_retries", 3),
                backoff_ms=r.get("backoff_ms", 2000),
            )

        if "voice" in raw:
            v = raw["voice"]
            defaults = VoiceConfig()
            settings.voice = VoiceConfig(
                language=v.get("language", defaults.language),
                silence_ms=v.get("silence_ms", defaults.silence_ms),
                settle_ms=v.get("settle_ms", defaults.settle_ms),
                pre_speak_ms=v.get("pre_speak_ms", defaults.pre_speak_ms),
                tick_interval_ms=v.get("tick_interval_ms", defaults.tick_interval_ms),
                rate=v.get("rate", defaults.rate),
                pitch=v.get("pitch", defaults.pitch),
                volume=v.get("volume", defaults.volume),
            )

        if "event" in raw:
            ev = raw["event"]
            defaults = EventConfig()
            settings.event = EventConfig(
                name=ev.get("name", defaults.name),
                date=ev.get("date", defaults.date),
                date_range=ev.get("date_range", defaults.date_range),
                assistant_name=ev.get("assistant_name", defaults.assistant_name),
                creator=ev.get("creator", defaults.creator),
                programs=[
                    ProgramInfo(name=p["name"], description=p.get("description", ""))
                    for p in ev.get("programs", [])
                ],
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
