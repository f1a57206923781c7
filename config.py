"""Configuration loading, validation, and env-var resolution."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

import yaml

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/config.yaml"

# Standard datasource keys (everything else goes into options).
_DS_STANDARD_KEYS = {"engine", "host", "port", "user", "password"}

_VALID_MODES = {"separate", "combined"}


class ConfigError(Exception):
    """Raised for invalid or incomplete configuration."""


@dataclass
class Datasource:
    name: str
    engine: str  # "mysql"
    host: str
    port: int
    user: str
    password: str
    options: dict = field(default_factory=dict)  # engine-specific settings


@dataclass
class CompressionOptions:
    type: str = "none"  # none, gzip, pgzip, zlib, zstd
    level: str = "default"  # best_speed, fast, default, better, best

    @property
    def enabled(self) -> bool:
        return self.type != "none"


@dataclass
class EncryptionOptions:
    enabled: bool = False
    key: str = ""  # empty -> resolved from $DUMPVAULT_ENCRYPTION_KEY at run time


@dataclass
class FilterOptions:
    exclude_system: bool = True
    exclude: list[str] = field(default_factory=list)
    include: list[str] = field(default_factory=list)
    include_file: str = ""


@dataclass
class RetentionPolicy:
    keep_last: int = 0
    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0
    keep_yearly: int = 0
    max_age_days: int = 0

    @property
    def has_rules(self) -> bool:
        return any([
            self.keep_last,
            self.keep_daily,
            self.keep_weekly,
            self.keep_monthly,
            self.keep_yearly,
            self.max_age_days,
        ])


@dataclass
class Job:
    name: str
    datasource: Datasource
    output_dir: str
    mode: str = "separate"
    compression: CompressionOptions = field(default_factory=CompressionOptions)
    encryption: EncryptionOptions = field(default_factory=EncryptionOptions)
    filter: FilterOptions = field(default_factory=FilterOptions)
    disk_check: bool = True
    safety_margin_pct: float = 15.0
    collect_metadata: bool = False
    capture_gtid: bool = False
    workers: int | None = None
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)


def load(config_path: str | None = None) -> dict:
    """Load and parse the YAML config file."""
    path = config_path or os.environ.get("DUMPVAULT_CONFIG", DEFAULT_CONFIG_PATH)

    if not Path(path).is_file():
        raise ConfigError(f"Config file not found: {path}")

    # Warn if config file is readable by group or others (may contain credentials)
    try:
        mode = os.stat(path).st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            log.warning(
                "Config file '%s' is readable by group/others (mode %o). "
                "This file may contain credentials, consider: chmod 600 %s",
                path, stat.S_IMODE(mode), path,
            )
    except OSError:
        pass  # skip check if stat fails (e.g. on some platforms)

    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("Config file must be a YAML mapping")

    return raw


def resolve_env(config: dict) -> dict:
    """Recursively resolve *_env keys from environment variables.

    For any key ending in '_env', look up the env var named by its value
    and replace with a key without the '_env' suffix.
    E.g. {'password_env': 'MY_SECRET'} -> {'password': '<value of $MY_SECRET>'}
    """
    resolved = {}
    for key, value in config.items():
        if isinstance(value, dict):
            resolved[key] = resolve_env(value)
        elif isinstance(value, str) and key.endswith("_env"):
            real_key = key.removesuffix("_env")
            env_val = os.environ.get(value)
            if env_val is None:
                raise ConfigError(
                    f"Environment variable '{value}' "
                    f"(referenced by '{key}') is not set"
                )
            resolved[real_key] = env_val
        else:
            resolved[key] = value
    return resolved


def read_name_list(path: str) -> list[str]:
    """Read one name per line, skipping blank lines and '#' comments."""
    try:
        with open(path) as f:
            lines = f.read().splitlines()
    except OSError as exc:
        raise ConfigError(f"Cannot read database list file '{path}': {exc}") from exc
    names = []
    for line in lines:
        line = line.strip()
        if line and not line.startswith("#"):
            names.append(line)
    return names


def get_datasource(raw_config: dict, name: str) -> Datasource:
    """Get a Datasource by name from the config."""
    datasources = raw_config.get("datasources") or {}
    if name not in datasources:
        raise ConfigError(
            f"Datasource '{name}' not found. "
            f"Available: {', '.join(datasources)}"
        )

    ds = resolve_env(datasources[name])

    engine = ds.get("engine")
    if not engine:
        raise ConfigError(
            f"Datasource '{name}' is missing required 'engine' field "
            f"(e.g. engine: mysql)"
        )

    # Collect engine-specific options (anything not in the standard keys)
    options = {k: v for k, v in ds.items() if k not in _DS_STANDARD_KEYS}

    try:
        port = int(ds.get("port", 3306))
    except (TypeError, ValueError):
        raise ConfigError(f"Datasource '{name}' has an invalid port: {ds.get('port')!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigError(f"Datasource '{name}' port must be between 1 and 65535, got {port}")

    return Datasource(
        name=name,
        engine=engine,
        host=ds.get("host", "localhost"),
        port=port,
        user=ds.get("user", ""),
        password=str(ds.get("password", "")),
        options=options,
    )


def resolve_timeout(ds: Datasource, key: str) -> float | None:
    """Return a positive timeout in seconds from datasource options, or None."""
    timeout = ds.options.get(key)
    if timeout is None:
        return None
    try:
        timeout = float(timeout)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {timeout!r}") from None
    if timeout <= 0:
        raise ConfigError(f"{key} must be positive, got {timeout}")
    return timeout


def _as_list(value, what: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"'{what}' must be a list of database names")
    return [str(v) for v in value]


def _parse_compression(cfg) -> CompressionOptions:
    # Shorthand: "compression: zstd"
    if isinstance(cfg, str):
        cfg = {"type": cfg}
    cfg = cfg or {}
    comp = CompressionOptions(
        type=str(cfg.get("type", "none")).lower(),
        level=str(cfg.get("level", "default")).lower(),
    )
    # Imported here: compressors imports config for ConfigError.
    from compressors import validate_level, validate_type

    validate_type(comp.type)
    validate_level(comp.level)
    return comp


def _parse_float(value, what: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{what}' must be a number, got {value!r}") from None


def get_job(raw_config: dict, name: str) -> Job:
    """Get a fully resolved Job by name."""
    jobs = raw_config.get("jobs") or {}
    if name not in jobs:
        raise ConfigError(
            f"Job '{name}' not found. Available: {', '.join(jobs)}"
        )

    job_cfg = resolve_env(jobs[name] or {})
    if "datasource" not in job_cfg:
        raise ConfigError(f"Job '{name}' is missing required 'datasource' field")
    ds = get_datasource(raw_config, job_cfg["datasource"])

    output_dir = job_cfg.get("output_dir")
    if not output_dir:
        raise ConfigError(f"Job '{name}' is missing required 'output_dir' field")

    mode = job_cfg.get("mode", "separate")
    if mode not in _VALID_MODES:
        raise ConfigError(
            f"Invalid mode '{mode}' for job '{name}'. "
            f"Supported: {', '.join(sorted(_VALID_MODES))}"
        )

    enc_cfg = job_cfg.get("encryption") or {}
    encryption = EncryptionOptions(
        enabled=bool(enc_cfg.get("enabled", False)),
        key=str(enc_cfg.get("key", "")),
    )

    flt_cfg = job_cfg.get("filter") or {}
    filter_opts = FilterOptions(
        exclude_system=bool(flt_cfg.get("exclude_system", True)),
        exclude=_as_list(flt_cfg.get("exclude"), "filter.exclude"),
        include=_as_list(flt_cfg.get("include"), "filter.include"),
        include_file=flt_cfg.get("include_file", "") or "",
    )

    margin = _parse_float(job_cfg.get("safety_margin_pct", 15), "safety_margin_pct")
    if margin < 0:
        raise ConfigError(f"safety_margin_pct must not be negative, got {margin}")

    workers = job_cfg.get("workers")
    if workers is not None:
        try:
            workers = int(workers)
        except (TypeError, ValueError):
            raise ConfigError(f"workers must be an integer, got {workers!r}") from None
        if workers < 1:
            raise ConfigError(f"workers must be at least 1, got {workers}")

    ret_cfg = job_cfg.get("retention") or {}
    retention = RetentionPolicy(
        keep_last=ret_cfg.get("keep_last", 0),
        keep_daily=ret_cfg.get("keep_daily", 0),
        keep_weekly=ret_cfg.get("keep_weekly", 0),
        keep_monthly=ret_cfg.get("keep_monthly", 0),
        keep_yearly=ret_cfg.get("keep_yearly", 0),
        max_age_days=ret_cfg.get("max_age_days", 0),
    )

    return Job(
        name=name,
        datasource=ds,
        output_dir=str(output_dir),
        mode=mode,
        compression=_parse_compression(job_cfg.get("compression")),
        encryption=encryption,
        filter=filter_opts,
        disk_check=bool(job_cfg.get("disk_check", True)),
        safety_margin_pct=margin,
        collect_metadata=bool(job_cfg.get("collect_metadata", False)),
        capture_gtid=bool(job_cfg.get("capture_gtid", False)),
        workers=workers,
        retention=retention,
    )


def get_all_job_names(raw_config: dict) -> list[str]:
    """Return all job names defined in the config."""
    return list((raw_config.get("jobs") or {}).keys())
