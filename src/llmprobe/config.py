"""Configuration loading and management for llmprobe."""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

from llmprobe.probe.searcher import ErrorPatterns, SearchSettings

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "llmprobe"


class ConfigError(ValueError):
    """A configuration value is missing or out of range."""


@dataclass
class GatewayConfig:
    name: str = ""
    url: str = ""
    api_key: str = ""
    timeout: float = 30.0  # seconds per request


@dataclass
class SearchConfig:
    max_trials: int = 40
    initial_value: int = 4096
    tolerance: int = 128
    pacing_seconds: float = 1.0
    refine_window: int = 1024


@dataclass
class ProbeConfig:
    input_tokens: int = 1000  # fixed input size of the max-output probe
    chars_per_token: float = 1.0
    needle_fact: str = ""  # empty = built-in needle
    needle_answer: str = ""


@dataclass
class LogConfig:
    enabled: bool = True
    dir: str = "~/.local/share/llmprobe/logs"


@dataclass
class ResultConfig:
    save: bool = False
    dir: str = "~/.config/llmprobe/estimates"


@dataclass
class PatternConfig:
    # Extra regexes appended after the built-in ones; one capture group each
    context: list[str] = field(default_factory=list)
    max_output: list[str] = field(default_factory=list)


@dataclass
class LLMProbeConfig:
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    log: LogConfig = field(default_factory=LogConfig)
    result: ResultConfig = field(default_factory=ResultConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)

    def search_settings(self) -> SearchSettings:
        s = self.search
        return SearchSettings(
            max_trials=s.max_trials,
            initial_value=s.initial_value,
            tolerance=s.tolerance,
            pacing_seconds=s.pacing_seconds,
            refine_window=s.refine_window,
        )

    def error_patterns(self) -> ErrorPatterns:
        try:
            return ErrorPatterns().extended(
                context=self.patterns.context, max_output=self.patterns.max_output
            )
        except (ValueError, re.error) as e:
            raise ConfigError(f"Invalid [patterns] entry: {e}") from e


_SECTIONS = ("gateway", "search", "probe", "log", "result", "patterns")


def load_config(config_path: str | Path | None = None) -> LLMProbeConfig:
    """Load configuration from a TOML file, falling back to defaults.

    Search order:
    1. Explicit config_path argument
    2. ~/.config/llmprobe/config.toml
    3. Built-in defaults

    ``LLMPROBE_BASE_URL`` and ``LLMPROBE_API_KEY`` override the file.
    """
    config = LLMProbeConfig()

    if config_path:
        user_path = Path(config_path).expanduser()
        if not user_path.exists():
            raise ConfigError(f"Config file not found: {user_path}")
    else:
        user_path = CONFIG_DIR / "config.toml"

    if user_path.exists():
        _merge_toml(config, user_path)

    env_url = os.environ.get("LLMPROBE_BASE_URL")
    if env_url:
        config.gateway.url = env_url
    env_api_key = os.environ.get("LLMPROBE_API_KEY")
    if env_api_key:
        config.gateway.api_key = env_api_key

    # Warn if config file contains an API key and has permissive permissions
    if config.gateway.api_key and user_path.exists():
        try:
            perms = user_path.stat().st_mode & 0o777
            if perms & 0o077:
                logger.warning(
                    "Config file %s has permissive permissions (%04o) and contains an API key. "
                    "Run: chmod 600 %s",
                    user_path,
                    perms,
                    user_path,
                )
        except OSError:
            pass

    validate_config(config)
    return config


def _merge_toml(config: LLMProbeConfig, path: Path) -> None:
    """Merge a TOML file into the config, overwriting only specified fields."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    for section in _SECTIONS:
        if section not in data:
            continue
        target = getattr(config, section)
        known = {f.name for f in fields(target)}
        for key, value in data[section].items():
            if key in known:
                setattr(target, key, value)
            else:
                logger.warning("Ignoring unknown config key [%s] %s in %s", section, key, path)


def validate_config(config: LLMProbeConfig) -> None:
    """Reject values the search cannot work with."""
    s = config.search
    if s.max_trials < 1:
        raise ConfigError(f"search.max_trials must be >= 1, got {s.max_trials}")
    if s.initial_value < 1:
        raise ConfigError(f"search.initial_value must be >= 1, got {s.initial_value}")
    if s.tolerance < 1:
        raise ConfigError(f"search.tolerance must be >= 1, got {s.tolerance}")
    if s.pacing_seconds < 0:
        raise ConfigError(f"search.pacing_seconds must be >= 0, got {s.pacing_seconds}")
    if s.refine_window < 0:
        raise ConfigError(f"search.refine_window must be >= 0, got {s.refine_window}")
    if config.gateway.timeout <= 0:
        raise ConfigError(f"gateway.timeout must be > 0, got {config.gateway.timeout}")
    if config.probe.input_tokens < 1:
        raise ConfigError(f"probe.input_tokens must be >= 1, got {config.probe.input_tokens}")
    if config.probe.chars_per_token <= 0:
        raise ConfigError(
            f"probe.chars_per_token must be > 0, got {config.probe.chars_per_token}"
        )
    config.error_patterns()
