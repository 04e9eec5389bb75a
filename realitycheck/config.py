from __future__ import annotations

import logging
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from realitycheck.errors import ConfigError

log = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def _resolve_home() -> Path:
    override = os.getenv("REALITYCHECK_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _default_db_url() -> str:
    return f"sqlite:///{_resolve_home() / 'data' / 'realitycheck.db'}"


def parse_duration(value: str | float | int) -> float:
    """Parse ``"90"``, ``"1.5"``, ``"500ms"``, ``"60s"``, ``"1h30m"`` into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")
    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


class Settings(BaseModel):
    """Every tunable of the engine, captured once and passed explicitly."""

    model_config = ConfigDict(frozen=True)

    home: Path = Field(default_factory=_resolve_home)
    http_addr: str = "127.0.0.1:8080"
    db_url: str = Field(default_factory=_default_db_url)

    llm_provider: str = "openai"
    llm_model: str = ""
    llm_api_key: str = ""

    requests_per_second: float = Field(default=2.0, gt=0)
    burst: int = Field(default=4, ge=1)

    cache_capacity: int = Field(default=4096, ge=1)
    cache_ttl: float = Field(default=24 * 3600.0, gt=0)

    max_evidence_per_query: int = Field(default=10, ge=1)
    max_evidence: int = Field(default=60, ge=1)
    max_queries: int = Field(default=20, ge=0)
    analysis_timeout: float = Field(default=60.0, gt=0)
    gather_workers: int = Field(default=4, ge=1)
    analyzer_timeout_fraction: float = Field(default=0.75, gt=0, le=1)
    min_quality: float = Field(default=0.2, ge=0, le=1)
    strip_query_strings: bool = True

    weights: dict[str, Decimal] | None = None

    bearer_token: str = ""
    log_level: str = "info"

    @property
    def http_host(self) -> str:
        host, _, _ = self.http_addr.rpartition(":")
        return host or "127.0.0.1"

    @property
    def http_port(self) -> int:
        _, _, port = self.http_addr.rpartition(":")
        return int(port or 8080)

    def ensure_directories(self) -> None:
        if self.db_url.startswith("sqlite:///"):
            Path(self.db_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)

    def validate_for_analysis(self) -> None:
        """Raise ConfigError when the chosen LLM provider has no API key."""
        key_var = {"anthropic": "ANTHROPIC_API_KEY", "openai": "OPENAI_API_KEY"}.get(self.llm_provider)
        if key_var and not (self.llm_api_key or os.environ.get(key_var)):
            raise ConfigError(f"{key_var} is required for llm_provider={self.llm_provider!r}")


# (setting name, env var, parser)
_ENV_FIELDS: list[tuple[str, str, Any]] = [
    ("http_addr", "HTTP_ADDR", str),
    ("db_url", "DB_DSN", str),
    ("llm_provider", "LLM_PROVIDER", str),
    ("llm_model", "LLM_MODEL", str),
    ("requests_per_second", "OPENAI_RPS", float),
    ("burst", "OPENAI_BURST", int),
    ("cache_capacity", "CACHE_LRU_SIZE", int),
    ("cache_ttl", "CACHE_TTL", parse_duration),
    ("max_evidence_per_query", "MAX_EVIDENCE_PER_QUERY", int),
    ("max_evidence", "MAX_EVIDENCE", int),
    ("max_queries", "MAX_QUERIES", int),
    ("analysis_timeout", "ANALYSIS_TIMEOUT", parse_duration),
    ("gather_workers", "GATHER_WORKERS", int),
    ("analyzer_timeout_fraction", "ANALYZER_TIMEOUT_FRACTION", float),
    ("min_quality", "MIN_EVIDENCE_QUALITY", float),
    ("bearer_token", "BEARER_TOKEN", str),
    ("log_level", "LOG_LEVEL", str),
]


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def load_settings(environ: Mapping[str, str] | None = None, config_file: Path | None = None) -> Settings:
    """Build Settings from an optional YAML file overlaid by environment variables.

    Unparseable values are logged and replaced by the default.
    """
    env = os.environ if environ is None else environ
    if config_file is None and env.get("REALITYCHECK_CONFIG"):
        config_file = Path(env["REALITYCHECK_CONFIG"]).expanduser()

    values: dict[str, Any] = {}
    origin: dict[str, str] = {}
    if config_file is not None:
        known = set(Settings.model_fields)
        for key, raw in load_yaml(config_file).items():
            if key not in known:
                log.warning("Ignoring unknown config key %r in %s", key, config_file)
                continue
            if key in ("cache_ttl", "analysis_timeout"):
                try:
                    raw = parse_duration(raw)
                except ValueError:
                    log.warning("Invalid value for %s=%r in %s, using default", key, raw, config_file)
                    continue
            values[key] = raw
            origin[key] = key

    for field, var, parse in _ENV_FIELDS:
        raw = (env.get(var) or "").strip()
        if not raw:
            continue
        try:
            values[field] = parse(raw)
        except ValueError:
            log.warning("Invalid value for %s=%r, using default", var, raw)
            continue
        origin[field] = var

    return _build_settings(values, origin)


def _build_settings(values: dict[str, Any], origin: dict[str, str]) -> Settings:
    """Construct Settings, dropping any value that fails field validation."""
    while True:
        try:
            return Settings(**values)
        except ValidationError as exc:
            bad = {err["loc"][0] for err in exc.errors() if err["loc"]} & set(values)
            if not bad:
                raise
            for key in sorted(bad):
                log.warning("Invalid value for %s=%r, using default", origin.get(key, key), values.pop(key))
