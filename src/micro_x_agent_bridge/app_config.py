from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    max_tool_result_chars: int
    max_turns: int
    working_directory: str | None
    memory_db_path: str
    resume_session_id: str | None
    configured_session_id: str | None
    output_format: str
    quiet: bool
    subagent_queue_size: int
    request_timeout_seconds: float | None
    serve_stdio: bool
    log_level: str
    log_consumers: list | None

    @property
    def structured_output(self) -> bool:
        return self.quiet or self.output_format == "stream-json"


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _to_optional_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    parsed = float(value)  # type: ignore[arg-type]
    return parsed if parsed > 0 else None


def parse_app_config(config: dict) -> AppConfig:
    output_format = str(config.get("OutputFormat", "text")).strip().lower()
    if output_format not in {"text", "stream-json"}:
        raise ValueError(f"Unknown OutputFormat: {output_format!r}. Supported: 'text', 'stream-json'")
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        max_turns=int(config.get("MaxTurns", 50)),
        working_directory=config.get("WorkingDirectory"),
        memory_db_path=str(config.get("MemoryDbPath", ".micro_x/sessions.db")),
        resume_session_id=str(config.get("ResumeSessionId", "")).strip() or None,
        configured_session_id=str(config.get("SessionId", "")).strip() or None,
        output_format=output_format,
        quiet=_to_bool(config.get("Quiet", False), default=False),
        subagent_queue_size=int(config.get("SubAgentQueueSize", 64)),
        request_timeout_seconds=_to_optional_float(config.get("RequestTimeoutSeconds", 30)),
        serve_stdio=_to_bool(config.get("ServeStdio", False), default=False),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    if provider_name == "openai":
        provider_env_var = "OPENAI_API_KEY"
    else:
        provider_env_var = "ANTHROPIC_API_KEY"
    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, ""),
        provider_env_var=provider_env_var,
    )
