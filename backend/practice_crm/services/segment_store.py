from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import TypeAdapter

from ..core.logging_config import get_logger
from ..schemas.segment import Segment
from .segment_fields import FieldRegistry

logger = get_logger(__name__)

STORE_VERSION = 1

_SEGMENT_LIST = TypeAdapter(List[Segment])


class SegmentStore:
    """
    JSON snapshot of the segment registry.

    Layout: {"version": 1, "savedAt": "...", "segments": [<Segment, camelCase>...],
    "removed": ["seg-..."]}. One record per segment with the nested condition list.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self, fields: Optional[FieldRegistry] = None) -> tuple[List[Segment], List[str]]:
        if not self.path.exists():
            logger.info(f"No segment snapshot at {self.path}, starting empty")
            return [], []

        with self.path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)

        version = payload.get("version")
        if version != STORE_VERSION:
            raise ValueError(f"unsupported segment snapshot version: {version!r}")

        context = {"fields": fields} if fields is not None else None
        segments = _SEGMENT_LIST.validate_python(payload.get("segments", []), context=context)
        removed = [str(x) for x in payload.get("removed", [])]
        logger.info(f"Loaded {len(segments)} segments from {self.path}")
        return segments, removed

    def save(self, segments: List[Segment], removed: List[str]) -> None:
        payload = {
            "version": STORE_VERSION,
            "savedAt": datetime.now(timezone.utc).isoformat(),
            "segments": _SEGMENT_LIST.dump_python(segments, mode="json", by_alias=True),
            "removed": sorted(removed),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a temp file in the same directory, then swap it in
        fd, tmp_name = tempfile.mkstemp(prefix=".segments-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved {len(segments)} segments to {self.path}")
