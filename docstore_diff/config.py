from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml


SOURCE_KINDS = {"mongo", "cosmos_sql"}
OUTPUT_FORMATS = {"json", "yaml", "text"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


@dataclass(frozen=True)
class SourceConfig:
    kind: str  # "mongo" | "cosmos_sql"
    database: str
    uri: Optional[str] = None  # mongo
    endpoint: Optional[str] = None  # cosmos_sql
    key: Optional[str] = None  # cosmos_sql


@dataclass(frozen=True)
class ComparisonConfig:
    key: str = "_id"
    fields: Optional[tuple[str, ...]] = None
    ignore_fields: tuple[str, ...] = ()
    limit: Optional[int] = None
    stream: bool = False
    compare_metadata: bool = False


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 6
    base_delay_ms: int = 500


@dataclass(frozen=True)
class LoggingConfig:
    main_log: Optional[str] = None
    level: str = "INFO"


@dataclass(frozen=True)
class ExportConfig:
    output_dir: Optional[str] = None
    format: str = "json"
    separate_files: bool = False


@dataclass(frozen=True)
class AppConfig:
    source_a: SourceConfig
    source_b: SourceConfig
    comparison: ComparisonConfig = field(default_factory=ComparisonConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    export: ExportConfig = field(default_factory=ExportConfig)


class ConfigError(ValueError):
    pass


_FIELD_PATH_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_-]*$")
_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _env_nonempty(name: str) -> Optional[str]:
    value = os.environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _expand_env(value: str, where: str) -> str:
    def repl(match: re.Match[str]) -> str:
        var = match.group(1)
        env_val = _env_nonempty(var)
        if env_val is None:
            raise ConfigError(f"Missing environment variable {var} referenced at {where}")
        return env_val

    return _ENV_VAR_RE.sub(repl, value)


def _expand_env_in_obj(obj: Any, where: str) -> Any:
    if isinstance(obj, str):
        return _expand_env(obj, where) if "${" in obj else obj
    if isinstance(obj, list):
        return [_expand_env_in_obj(v, f"{where}[{i}]") for i, v in enumerate(obj)]
    if isinstance(obj, dict):
        return {k: _expand_env_in_obj(v, f"{where}.{k}") for k, v in obj.items()}
    return obj


def _require(mapping: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in mapping:
        raise ConfigError(f"Missing required config key: {where}.{key}")
    return mapping[key]


def _as_str(value: Any, where: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Expected non-empty string at {where}")
    return value


def _as_int(value: Any, where: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Expected integer at {where}")
    return value


def _as_bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"Expected boolean at {where}")
    return value


def _as_str_list(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"Expected list[str] at {where}")
    return tuple(value)


def _as_mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Expected object/map at {where}")
    return value


def as_field_path(value: Any, where: str) -> str:
    s = _as_str(value, where)
    parts = s.split(".")
    if not parts or any(not p or _FIELD_PATH_SEGMENT_RE.fullmatch(p) is None for p in parts):
        raise ConfigError(
            f"Expected field path at {where} (e.g. '_id', 'email', 'customer.id'; dot-separated, segments use letters/numbers/_/-)."
        )
    return s


def load_config(path: str) -> AppConfig:
    raw = _expand_env_in_obj(_load_raw_config(path), "root")
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be an object/map.")

    source_a = _parse_source(_as_mapping(_require(raw, "source_a", "root"), "source_a"), "source_a", "SOURCE_A")
    source_b = _parse_source(_as_mapping(_require(raw, "source_b", "root"), "source_b"), "source_b", "SOURCE_B")

    return AppConfig(
        source_a=source_a,
        source_b=source_b,
        comparison=_parse_comparison(_as_mapping(raw.get("comparison"), "comparison")),
        retry=_parse_retry(_as_mapping(raw.get("retry"), "retry")),
        logging=_parse_logging(_as_mapping(raw.get("logging"), "logging")),
        export=_parse_export(_as_mapping(raw.get("export"), "export")),
    )


def _parse_source(raw: Mapping[str, Any], where: str, env_prefix: str) -> SourceConfig:
    kind = _as_str(_require(raw, "kind", where), f"{where}.kind").lower()
    if kind not in SOURCE_KINDS:
        raise ConfigError(f"{where}.kind must be one of: {', '.join(sorted(SOURCE_KINDS))}")
    database = _as_str(
        _env_nonempty(f"{env_prefix}_DATABASE") or _require(raw, "database", where),
        f"{where}.database",
    )
    if kind == "mongo":
        uri = _as_str(_env_nonempty(f"{env_prefix}_URI") or _require(raw, "uri", where), f"{where}.uri")
        return SourceConfig(kind=kind, database=database, uri=uri)

    endpoint = _as_str(
        _env_nonempty(f"{env_prefix}_ENDPOINT") or _require(raw, "endpoint", where),
        f"{where}.endpoint",
    )
    key = _as_str(_env_nonempty(f"{env_prefix}_KEY") or _require(raw, "key", where), f"{where}.key")
    return SourceConfig(kind=kind, database=database, endpoint=endpoint, key=key)


def _parse_comparison(raw: Mapping[str, Any]) -> ComparisonConfig:
    key = as_field_path(raw.get("key", "_id"), "comparison.key")
    fields_raw = raw.get("fields")
    fields = _as_str_list(fields_raw, "comparison.fields") if fields_raw is not None else None
    ignore_fields = _as_str_list(raw.get("ignore_fields"), "comparison.ignore_fields")

    limit_raw = raw.get("limit")
    limit = _as_int(limit_raw, "comparison.limit") if limit_raw is not None else None
    if limit is not None and limit <= 0:
        raise ConfigError("comparison.limit must be >0.")

    return ComparisonConfig(
        key=key,
        fields=fields,
        ignore_fields=ignore_fields,
        limit=limit,
        stream=_as_bool(raw.get("stream", False), "comparison.stream"),
        compare_metadata=_as_bool(raw.get("compare_metadata", False), "comparison.compare_metadata"),
    )


def _parse_retry(raw: Mapping[str, Any]) -> RetryConfig:
    max_attempts = _as_int(raw.get("max_attempts", 6), "retry.max_attempts")
    if max_attempts <= 0:
        raise ConfigError("retry.max_attempts must be >0.")
    base_delay_ms = _as_int(raw.get("base_delay_ms", 500), "retry.base_delay_ms")
    if base_delay_ms < 0:
        raise ConfigError("retry.base_delay_ms must be >=0.")
    return RetryConfig(max_attempts=max_attempts, base_delay_ms=base_delay_ms)


def _parse_logging(raw: Mapping[str, Any]) -> LoggingConfig:
    main_log_raw = raw.get("main_log")
    main_log = _as_str(main_log_raw, "logging.main_log") if main_log_raw is not None else None
    level = _as_str(raw.get("level", "INFO"), "logging.level").upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of: {', '.join(sorted(LOG_LEVELS))}")
    return LoggingConfig(main_log=main_log, level=level)


def _parse_export(raw: Mapping[str, Any]) -> ExportConfig:
    output_dir_raw = raw.get("output_dir")
    output_dir = _as_str(output_dir_raw, "export.output_dir") if output_dir_raw is not None else None
    fmt = _as_str(raw.get("format", "json"), "export.format").lower()
    if fmt not in OUTPUT_FORMATS:
        raise ConfigError(f"export.format must be one of: {', '.join(sorted(OUTPUT_FORMATS))}")
    return ExportConfig(
        output_dir=output_dir,
        format=fmt,
        separate_files=_as_bool(raw.get("separate_files", False), "export.separate_files"),
    )


def _load_raw_config(path: str) -> Any:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {path}")
    data = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() == ".json":
            return json.loads(data)
        return yaml.safe_load(data)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not parse config file {path}: {exc}") from exc
