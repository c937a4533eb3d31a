from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

import requests

from catalog.codec import deserialize, loads
from catalog.snapshot import TargetCatalog
from common.config import CatalogConfig
from common.errors import CatalogUnavailable, CodecIntegrityError
from common.logging_setup import get_logger
from common.types import TargetRecord


log = get_logger("catalog.providers")

API_KEY_HEADER = "X-API-KEY"


class CatalogProvider(Protocol):
    """
    External collaborator that materializes the targets a caller may see.
    Implementations raise CatalogUnavailable when they cannot.
    """

    def fetch(self, api_key: Optional[str] = None) -> List[TargetRecord]:
        ...


class FileCatalogProvider:
    """Reads a codec blob from disk on every fetch."""

    def __init__(self, path: str):
        self.path = Path(path)

    def fetch(self, api_key: Optional[str] = None) -> List[TargetRecord]:
        if not self.path.exists():
            raise CatalogUnavailable(f"catalog file not found: {self.path}")
        try:
            return deserialize(self.path)
        except (OSError, CodecIntegrityError) as e:
            raise CatalogUnavailable(f"cannot load catalog {self.path}: {e}") from e


class HttpCatalogProvider:
    """GETs a codec blob from the catalog service, authenticated by X-API-KEY."""

    def __init__(self, url: str, timeout_s: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()

    def fetch(self, api_key: Optional[str] = None) -> List[TargetRecord]:
        headers = {API_KEY_HEADER: api_key} if api_key else {}
        try:
            r = self.session.get(self.url, headers=headers, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise CatalogUnavailable(f"catalog request failed: {e}") from e
        if r.status_code != 200:
            raise CatalogUnavailable(f"catalog service error {r.status_code}: {r.text[:200]}")
        try:
            return loads(r.content)
        except CodecIntegrityError as e:
            raise CatalogUnavailable(f"catalog from {self.url} is corrupt: {e}") from e


class InMemoryCatalogProvider:
    """
    Fixed records, optionally partitioned per API key. With `by_key`, an
    unknown key is refused; without it every caller sees `records`.
    """

    def __init__(
        self,
        records: Sequence[TargetRecord] = (),
        by_key: Optional[Dict[str, Sequence[TargetRecord]]] = None,
    ):
        self.records = list(records)
        self.by_key = {k: list(v) for k, v in (by_key or {}).items()}

    def fetch(self, api_key: Optional[str] = None) -> List[TargetRecord]:
        if self.by_key:
            if api_key not in self.by_key:
                raise CatalogUnavailable("no catalog for this API key")
            return list(self.by_key[api_key])
        return list(self.records)


def provider_from_config(cfg: CatalogConfig) -> CatalogProvider:
    if cfg.source == "http":
        return HttpCatalogProvider(str(cfg.url), timeout_s=cfg.timeout_s)
    if cfg.source == "memory":
        return InMemoryCatalogProvider()
    return FileCatalogProvider(cfg.path)


def load_snapshot(provider: CatalogProvider, api_key: Optional[str] = None, name: str = "catalog") -> TargetCatalog:
    """
    One-shot blocking fetch into an immutable snapshot. Any provider failure
    surfaces as CatalogUnavailable.
    """
    try:
        records = provider.fetch(api_key)
    except CatalogUnavailable:
        raise
    except Exception as e:
        raise CatalogUnavailable(f"catalog provider failed: {e}") from e
    snap = TargetCatalog.of(records, name=name)
    log.info("catalog snapshot loaded", extra={"extra": {"name": name, "targets": len(snap)}})
    return snap
