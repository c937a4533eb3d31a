#!/usr/bin/env python3
"""
Build a catalog blob (.bin) for the recognition server.

- With --images DIR: one target per image file (id = file stem).
- Else: synthesize feature-rich demo targets.

Every target gets the same physical width (--width-units); its height follows
the image aspect ratio.

Examples:
  python scripts/build_catalog.py --out data/catalog.bin
  python scripts/build_catalog.py --images refs/ --width-units 21.0 --out data/posters.bin
  python scripts/build_catalog.py --demo-count 3 --extractor orb --out data/demo.bin
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Tuple

import cv2
import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from catalog.builder import build_catalog, synthesize_target
from catalog.codec import serialize
from common.config import load_config
from common.logging_setup import get_logger, setup_logging
from recognition.features import ExtractorConfig, FingerprintExtractor


log = get_logger("build_catalog")

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".bmp", ".webp", ".tif", ".tiff")


def load_images(folder: Path) -> List[Tuple[str, np.ndarray]]:
    out = []
    for p in sorted(folder.iterdir()):
        if p.suffix.lower() not in IMAGE_SUFFIXES:
            continue
        img = cv2.imread(str(p), cv2.IMREAD_COLOR)
        if img is None:
            log.warning("skipping unreadable image", extra={"extra": {"path": str(p)}})
            continue
        out.append((p.stem, img))
    return out


def main() -> None:
    ap = argparse.ArgumentParser(description="Build a recognition catalog blob")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--images", default="", help="Folder of reference images")
    ap.add_argument("--width-units", type=float, default=1.0, help="Physical width of each target")
    ap.add_argument("--extractor", default=None, help="Override extractor method (sift/orb/akaze/brisk/kaze)")
    ap.add_argument("--demo-count", type=int, default=1, help="Synthetic targets when --images is not given")
    ap.add_argument("--seed", type=int, default=1234)
    ap.add_argument("--out", default=None, help="Output path (defaults to catalog.path from config)")
    args = ap.parse_args()

    setup_logging()
    cfg = load_config(args.config)
    ext_cfg = cfg.extractor
    if args.extractor:
        ext_cfg = ExtractorConfig.from_dict({**{k: getattr(ext_cfg, k) for k in ext_cfg.__dataclass_fields__}, "method": args.extractor})
    extractor = FingerprintExtractor(ext_cfg)

    if args.images:
        images = load_images(Path(args.images))
        if not images:
            raise SystemExit(f"no images found in {args.images}")
    else:
        images = [(f"demo_{i}", synthesize_target(seed=args.seed + i)) for i in range(args.demo_count)]

    records = build_catalog(((tid, img, args.width_units) for tid, img in images), extractor, cfg.preprocess)
    out = Path(args.out or cfg.catalog.path)
    serialize(out, records)
    print(f"[ok] wrote {len(records)} targets to {out}")
    print("Start the server with:")
    print("  python -m session.server --config config/params.yaml")


if __name__ == "__main__":
    main()
