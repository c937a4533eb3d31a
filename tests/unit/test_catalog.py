"""
Unit tests for catalog building, providers and snapshots
"""

import pytest
import numpy as np
import cv2
import requests
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from catalog import codec
from catalog.builder import build_catalog, build_target_record, height_units_for, synthesize_target
from catalog.providers import (
    FileCatalogProvider,
    HttpCatalogProvider,
    InMemoryCatalogProvider,
    load_snapshot,
    provider_from_config,
)
from catalog.snapshot import TargetCatalog
from common.config import CatalogConfig
from common.errors import CatalogUnavailable, ConfigurationError
from recognition.features import FingerprintExtractor
from recognition.preprocess import PreprocessOptions


@pytest.fixture(scope="module")
def extractor():
    return FingerprintExtractor()


@pytest.fixture(scope="module")
def record(extractor):
    return build_target_record("poster", synthesize_target((480, 360), seed=3), 30.0, extractor)


class _Resp:
    def __init__(self, status_code, content=b"", text=""):
        self.status_code = status_code
        self.content = content
        self.text = text


class _Session:
    def __init__(self, resp=None, exc=None):
        self.resp, self.exc = resp, exc
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append((url, headers, timeout))
        if self.exc:
            raise self.exc
        return self.resp


class TestBuilder:
    """Reference image -> TargetRecord"""

    def test_height_follows_aspect(self):
        assert height_units_for(30.0, 480, 360) == pytest.approx(22.5)

    def test_record_fields(self, record):
        assert record.id == "poster"
        assert record.reference_width_units == 30.0
        assert record.reference_height_units == pytest.approx(22.5)
        assert record.reference_frame_size == (480, 360)
        assert len(record.fingerprint) > 0
        img = cv2.imdecode(np.frombuffer(record.image, np.uint8), cv2.IMREAD_UNCHANGED)
        assert img.shape[:2] == (360, 480)

    def test_large_reference_is_downscaled(self, extractor):
        rec = build_target_record("big", synthesize_target((1280, 640)), 2.0, extractor, PreprocessOptions(max_dimension=640))
        assert rec.reference_frame_size == (640, 320)
        assert rec.reference_height_units == pytest.approx(1.0)

    def test_accepts_encoded_bytes(self, extractor):
        ok, buf = cv2.imencode(".png", synthesize_target((200, 100)))
        rec = build_target_record("png", buf.tobytes(), 1.0, extractor)
        assert rec.reference_frame_size == (200, 100)

    def test_invalid_inputs(self, extractor):
        img = synthesize_target((64, 64))
        with pytest.raises(ConfigurationError):
            build_target_record("", img, 1.0, extractor)
        with pytest.raises(ConfigurationError):
            build_target_record("x", img, 0.0, extractor)

    def test_duplicate_ids(self, extractor):
        img = synthesize_target((64, 64))
        with pytest.raises(ConfigurationError):
            build_catalog([("a", img, 1.0), ("a", img, 1.0)], extractor)


class TestProviders:
    """Catalog ingestion"""

    def test_file_provider(self, tmp_path, record):
        path = tmp_path / "cat.bin"
        codec.serialize(path, [record])
        got = FileCatalogProvider(str(path)).fetch()
        assert [r.id for r in got] == ["poster"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogUnavailable):
            FileCatalogProvider(str(tmp_path / "nope.bin")).fetch()

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "bad.bin"
        path.write_bytes(b"TCAT\x01")
        with pytest.raises(CatalogUnavailable):
            FileCatalogProvider(str(path)).fetch()

    def test_http_provider_sends_api_key(self, record):
        s = _Session(_Resp(200, codec.dumps([record])))
        got = HttpCatalogProvider("http://catalog/export", timeout_s=3.0, session=s).fetch("secret")
        assert [r.id for r in got] == ["poster"]
        assert s.calls == [("http://catalog/export", {"X-API-KEY": "secret"}, 3.0)]

    def test_http_error_status(self):
        s = _Session(_Resp(401, text="unauthorized"))
        with pytest.raises(CatalogUnavailable):
            HttpCatalogProvider("http://catalog/export", session=s).fetch("bad")

    def test_http_connection_error(self):
        s = _Session(exc=requests.ConnectionError("refused"))
        with pytest.raises(CatalogUnavailable):
            HttpCatalogProvider("http://catalog/export", session=s).fetch()

    def test_in_memory_per_key(self, record):
        p = InMemoryCatalogProvider(by_key={"k": [record]})
        assert len(p.fetch("k")) == 1
        with pytest.raises(CatalogUnavailable):
            p.fetch("other")

    def test_provider_from_config(self, tmp_path):
        assert isinstance(provider_from_config(CatalogConfig(path=str(tmp_path / "c.bin"))), FileCatalogProvider)
        assert isinstance(provider_from_config(CatalogConfig(source="http", url="http://x")), HttpCatalogProvider)
        assert isinstance(provider_from_config(CatalogConfig(source="memory")), InMemoryCatalogProvider)


class TestSnapshot:
    """Session-scoped immutable snapshot"""

    def test_snapshot_is_detached_from_provider(self, record):
        p = InMemoryCatalogProvider([record])
        snap = load_snapshot(p, name="demo")
        p.records.clear()
        assert len(snap) == 1
        assert snap.ids == ("poster",)
        assert snap.get("poster") is record
        assert snap.get("missing") is None
        with pytest.raises(AttributeError):
            snap.records = ()

    def test_unexpected_provider_error_is_wrapped(self):
        class Broken:
            def fetch(self, api_key=None):
                raise KeyError("boom")

        with pytest.raises(CatalogUnavailable):
            load_snapshot(Broken())

    def test_empty_snapshot_is_falsy(self):
        assert not TargetCatalog.of([])
