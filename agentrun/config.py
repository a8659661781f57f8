"""
Engine configuration: provider, run loop, retry policy and history sections.

A later layer wins over an earlier one:
    built-in defaults, agentrun.yaml, the selected profile, AGENTRUN_* env
    vars, caller overrides, then overrides set on a live ``AgentConfig``.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMConfig:
    name: str = "openai"
    model: str = "gpt-4o"
    api_base: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_seconds: float = 120.0
    stream: bool = False
    extra: dict = field(default_factory=dict)


@dataclass
class RunConfig:
    system_prompt: str = ""
    max_iterations: int = 10
    tool_timeout_seconds: float = 30.0
    parallel_tools: bool = False


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    timeout_seconds: float | None = 60.0


@dataclass
class HistoryConfig:
    max_entries: int | None = None
    preserve_system_on_reset: bool = True


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class AgentConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    run: RunConfig = field(default_factory=RunConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Override one setting for this config object, e.g. ``'run.max_iterations'``."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Set ``section.key`` on *obj*; unknown keys raise ``AttributeError``."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise AttributeError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Merge a profile or file mapping over *base*; nested sections merge key by key."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Convert an AGENTRUN_* value to the field's type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Instantiate one config section; keys it does not define are dropped."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "AGENTRUN_LLM_NAME":             ("llm.name", str),
    "AGENTRUN_LLM_MODEL":            ("llm.model", str),
    "AGENTRUN_LLM_API_BASE":         ("llm.api_base", str),
    "AGENTRUN_LLM_API_KEY_ENV":      ("llm.api_key_env", str),
    "AGENTRUN_LLM_TEMPERATURE":      ("llm.temperature", float),
    "AGENTRUN_LLM_MAX_TOKENS":       ("llm.max_tokens", int),
    "AGENTRUN_LLM_TIMEOUT":          ("llm.timeout_seconds", float),
    "AGENTRUN_LLM_STREAM":           ("llm.stream", bool),
    "AGENTRUN_RUN_SYSTEM_PROMPT":    ("run.system_prompt", str),
    "AGENTRUN_RUN_MAX_ITERATIONS":   ("run.max_iterations", int),
    "AGENTRUN_RUN_TOOL_TIMEOUT":     ("run.tool_timeout_seconds", float),
    "AGENTRUN_RUN_PARALLEL_TOOLS":   ("run.parallel_tools", bool),
    "AGENTRUN_RETRY_MAX_ATTEMPTS":   ("retry.max_attempts", int),
    "AGENTRUN_RETRY_BASE_DELAY":     ("retry.base_delay", float),
    "AGENTRUN_RETRY_MAX_DELAY":      ("retry.max_delay", float),
    "AGENTRUN_RETRY_TIMEOUT":        ("retry.timeout_seconds", float),
    "AGENTRUN_HISTORY_MAX_ENTRIES":  ("history.max_entries", int),
    "AGENTRUN_HISTORY_KEEP_SYSTEM":  ("history.preserve_system_on_reset", bool),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> AgentConfig:
    """
    Load engine settings.

    A missing file is not an error; the defaults apply.  The ``profiles``
    mapping of the file is kept on the result so callers can inspect it.

    Parameters
    ----------
    config_path : YAML file with ``llm``, ``run``, ``retry``, ``history``
        and ``profiles`` sections
    profile : entry of ``profiles`` merged over the file's sections
    cli_overrides : ``section.key`` -> value, applied after env vars
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile and "profiles" in raw:
        profile_data = raw.get("profiles", {}).get(profile, {})
        if profile_data:
            raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = AgentConfig(
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        run=_build_section(RunConfig, raw.get("run", {})),
        retry=_build_section(RetryConfig, raw.get("retry", {})),
        history=_build_section(HistoryConfig, raw.get("history", {})),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. Explicit overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg
