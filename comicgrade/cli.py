from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from .collaborators import RemoteServices
from .collection import collection_stats, items_from_df, items_to_df, load_collection
from .config import BATCH_PAUSE_SECONDS, COLLECTION_PATH, GRADING_SERVICES_URL, LOG_DIR
from .orchestrator import GradingOrchestrator
from .pipeline_types import CapturedImage, GradableItem

_IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")


def _setup_logging() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.add(LOG_DIR / "comicgrade_{time}.log", rotation="10 MB", retention=5, level="INFO")


def captures_from_dir(images_dir: Optional[Path], items: List[GradableItem]) -> Dict[str, List[CapturedImage]]:
    """Pick up ``<item_id>_front.jpg`` / ``<item_id>_back.png`` style files."""
    if images_dir is None:
        return {}
    out: Dict[str, List[CapturedImage]] = {}
    for item in items:
        caps = []
        for side in ("front", "back"):
            for suffix in _IMAGE_SUFFIXES:
                p = images_dir / f"{item.item_id}_{side}{suffix}"
                if p.exists():
                    caps.append(CapturedImage(side=side, data=p.read_bytes()))
                    break
        if caps:
            out[item.item_id] = caps
    logger.info("Found captures for {} of {} items in {}", len(out), len(items), images_dir)
    return out


async def _grade_collection(args) -> List[GradableItem]:
    items = items_from_df(load_collection(args.collection))
    captures = captures_from_dir(args.images_dir, items)

    async with RemoteServices(args.services_url) as services:
        orchestrator = GradingOrchestrator(services, memory=services, batch_pause=args.pause)
        await orchestrator.grade_batch(items, captures)
    return items


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Batch-grade the ungraded items of a comic collection.")
    ap.add_argument("--collection", type=Path, default=COLLECTION_PATH,
                    help="CSV or XLSX collection export")
    ap.add_argument("--out", type=Path, default=None,
                    help="Where to write the graded collection CSV")
    ap.add_argument("--images-dir", type=Path, default=None,
                    help="Directory holding <item_id>_front.jpg / <item_id>_back.jpg captures")
    ap.add_argument("--services-url", default=GRADING_SERVICES_URL,
                    help="Grading services gateway (defaults to GRADING_SERVICES_URL)")
    ap.add_argument("--pause", type=float, default=BATCH_PAUSE_SECONDS,
                    help="Seconds to wait between items")
    ap.add_argument("--stats-only", action="store_true",
                    help="Print collection totals without grading")
    args = ap.parse_args(argv)

    _setup_logging()

    if args.stats_only:
        items = items_from_df(load_collection(args.collection))
    else:
        if not args.services_url:
            logger.error("No grading services configured; set GRADING_SERVICES_URL or pass --services-url")
            return 2
        items = asyncio.run(_grade_collection(args))

    stats = collection_stats(items)
    print(f"Items:       {stats['total']} ({stats['graded']} graded, {stats['ungraded']} ungraded, "
          f"{stats['pending']} pending review)")
    print(f"Total value: ${stats['total_value']:,}")
    print(f"Avg grade:   {stats['avg_grade']:.1f} {stats['avg_grade_label']}")
    print(f"Avg conf.:   {stats['avg_confidence']:.1f}%")

    if args.out:
        args.out.parent.mkdir(parents=True, exist_ok=True)
        items_to_df(items).to_csv(args.out, index=False, encoding="utf-8")
        logger.info("Wrote {} items to {}", len(items), args.out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
