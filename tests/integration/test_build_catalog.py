"""
Integration test: catalog CLI -> file provider -> recognition
"""

import runpy
import pytest
import cv2
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from catalog.builder import synthesize_target
from catalog.providers import FileCatalogProvider, load_snapshot
from recognition.engine import RecognitionEngine

SCRIPT = os.path.join(project_root, "scripts", "build_catalog.py")


def _run_cli(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["build_catalog.py", *args])
    runpy.run_path(SCRIPT, run_name="__main__")


class TestBuildCatalogCli:
    """scripts/build_catalog.py"""

    def test_demo_targets(self, monkeypatch, tmp_path):
        out = tmp_path / "demo.bin"
        _run_cli(monkeypatch, "--config", str(tmp_path / "none.yaml"), "--demo-count", "2", "--out", str(out))
        snap = load_snapshot(FileCatalogProvider(str(out)), name="demo")
        assert snap.ids == ("demo_0", "demo_1")
        report = RecognitionEngine(snap).recognize(synthesize_target(seed=1235))
        assert [r.target_id for r in report.results] == ["demo_1"]

    def test_image_folder(self, monkeypatch, tmp_path):
        refs = tmp_path / "refs"
        refs.mkdir()
        cv2.imwrite(str(refs / "cover_a.png"), synthesize_target((300, 400), seed=5))
        cv2.imwrite(str(refs / "cover_b.png"), synthesize_target((400, 300), seed=6))
        (refs / "notes.txt").write_text("ignored")
        out = tmp_path / "covers.bin"
        _run_cli(
            monkeypatch,
            "--config", str(tmp_path / "none.yaml"),
            "--images", str(refs),
            "--width-units", "15",
            "--out", str(out),
        )
        recs = FileCatalogProvider(str(out)).fetch()
        assert [r.id for r in recs] == ["cover_a", "cover_b"]
        assert recs[0].reference_height_units == pytest.approx(20.0)
        assert recs[1].reference_height_units == pytest.approx(11.25)

    def test_empty_folder_exits(self, monkeypatch, tmp_path):
        with pytest.raises(SystemExit):
            _run_cli(monkeypatch, "--config", str(tmp_path / "none.yaml"), "--images", str(tmp_path))
