from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from common.errors import ConfigurationError
from recognition.features import ExtractorConfig, MatcherConfig
from recognition.pose import PoseConfig
from recognition.preprocess import PreprocessOptions


DEFAULT_CONFIG_PATH = "config/params.yaml"
CATALOG_SOURCES = ("file", "http", "memory")


@dataclass(frozen=True, slots=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    chunk_size: int = 4096
    log_level: Optional[str] = None

    def __post_init__(self) -> None:
        if not (0 < int(self.port) < 65536):
            raise ConfigurationError(f"invalid port {self.port}")
        if int(self.chunk_size) <= 0:
            raise ConfigurationError("chunk_size must be > 0")


@dataclass(frozen=True, slots=True)
class CatalogConfig:
    """
    Where sessions load their target snapshot from.

    source "file" reads `path`, "http" GETs `url` with the caller's API key,
    "memory" starts empty (embedding code and tests inject records).
    """
    source: str = "file"
    path: str = "data/catalog.bin"
    url: Optional[str] = None
    name: str = "catalog"
    timeout_s: float = 10.0

    def __post_init__(self) -> None:
        if self.source not in CATALOG_SOURCES:
            raise ConfigurationError(f"catalog source must be one of {CATALOG_SOURCES}, got {self.source!r}")
        if self.source == "http" and not self.url:
            raise ConfigurationError("catalog source 'http' requires a url")
        if self.timeout_s <= 0:
            raise ConfigurationError("timeout_s must be > 0")


@dataclass(frozen=True, slots=True)
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    preprocess: PreprocessOptions = field(default_factory=PreprocessOptions)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    pose: PoseConfig = field(default_factory=PoseConfig)


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    v = raw.get(key) or {}
    if not isinstance(v, dict):
        raise ConfigurationError(f"config section '{key}' must be a mapping")
    return v


def _known(cls, d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: d[k] for k in cls.__dataclass_fields__ if k in d}


def config_from_dict(raw: Optional[Dict[str, Any]]) -> AppConfig:
    """Build an AppConfig from a parsed mapping; unknown keys are ignored."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigurationError("config root must be a mapping")
    try:
        return AppConfig(
            server=ServerConfig(**_known(ServerConfig, _section(raw, "server"))),
            catalog=CatalogConfig(**_known(CatalogConfig, _section(raw, "catalog"))),
            preprocess=PreprocessOptions.from_dict(_section(raw, "preprocess")),
            extractor=ExtractorConfig.from_dict(_section(raw, "extractor")),
            matcher=MatcherConfig.from_dict(_section(raw, "matcher")),
            pose=PoseConfig.from_dict(_section(raw, "pose")),
        )
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


def load_config(path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Read YAML config. A missing file yields defaults; malformed YAML or invalid
    values raise ConfigurationError.
    """
    p = Path(path)
    if not p.exists():
        return AppConfig()
    try:
        with p.open("r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse {path}: {e}") from e
    return config_from_dict(raw)
