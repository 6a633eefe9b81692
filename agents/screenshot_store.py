import hashlib
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from agents.hierarchy import ParsedHierarchy

STRUCTURAL_TEXTS = 10


@dataclass(frozen=True)
class ScreenshotRecord:
    path: str
    image_hash: str
    structural_hash: str


def content_hash(image: bytes) -> str:
    return hashlib.sha256(image).hexdigest()


def structural_hash(hierarchy: Optional[ParsedHierarchy]) -> str:
    """Element count + the first few normalized texts; for inspection, not dedup."""
    if hierarchy is None:
        count, texts = 0, []
    else:
        count = hierarchy.total_count
        texts = [
            re.sub(r"\s+", " ", el.text).strip().lower()
            for el in hierarchy.text_elements[:STRUCTURAL_TEXTS]
        ]
    payload = json.dumps({"count": count, "texts": texts}, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ScreenshotStore:
    """Writes deduplicated captures as screenshot-1.png, screenshot-2.png, ...

    Dedup is an exact content-hash match: two images that differ by one
    byte are two screenshots.
    """

    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._records: List[ScreenshotRecord] = []
        self._hashes = set()

    def is_duplicate(self, image: bytes) -> bool:
        return content_hash(image) in self._hashes

    def save(self, image: bytes, hierarchy: Optional[ParsedHierarchy] = None) -> ScreenshotRecord:
        digest = content_hash(image)
        path = self.output_dir / f"screenshot-{len(self._records) + 1}.png"
        path.write_bytes(image)
        record = ScreenshotRecord(path=str(path), image_hash=digest, structural_hash=structural_hash(hierarchy))
        self._records.append(record)
        self._hashes.add(digest)
        logging.info(f"[STORE] saved {path.name}")
        return record

    def count(self) -> int:
        return len(self._records)

    def get_all(self) -> List[str]:
        return [r.path for r in self._records]

    def records(self) -> List[ScreenshotRecord]:
        return list(self._records)
