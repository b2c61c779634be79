"""In-memory R-tree over live segment bounding boxes."""

from __future__ import annotations

import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import shapely
from shapely import STRtree
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import (
    MATCHING_SEARCH_RADIUS_M,
    SPATIAL_QUERY_TIMEOUT_SECONDS,
    SPATIAL_QUERY_WORKERS,
)
from ..db.schema import Segment
from ..errors import SpatialQueryError, SpatialQueryTimeoutError

T = TypeVar("T")

BBox = Tuple[float, float, float, float]

_METRES_PER_DEGREE_LAT = 111_320.0


def expand_bbox(bbox: BBox, radius_m: float) -> BBox:
    """Grow a lon/lat bounding box by ``radius_m`` on every side."""

    min_lon, min_lat, max_lon, max_lat = bbox
    d_lat = radius_m / _METRES_PER_DEGREE_LAT
    widest_lat = max(abs(min_lat), abs(max_lat))
    cos_lat = max(math.cos(math.radians(min(widest_lat, 89.0))), 1e-6)
    d_lon = radius_m / (_METRES_PER_DEGREE_LAT * cos_lat)
    return (
        max(min_lon - d_lon, -180.0),
        max(min_lat - d_lat, -90.0),
        min(max_lon + d_lon, 180.0),
        min(max_lat + d_lat, 90.0),
    )


def bbox_of(points: Iterable[Tuple[float, float]]) -> BBox:
    lons: List[float] = []
    lats: List[float] = []
    for lon, lat in points:
        lons.append(lon)
        lats.append(lat)
    if not lons:
        raise ValueError("Cannot compute a bounding box of no points")
    return min(lons), min(lats), max(lons), max(lats)


@dataclass(slots=True, frozen=True)
class IndexedSegment:
    segment_id: str
    bbox: BBox
    activity_type: Optional[str] = None


class SegmentIndex:
    """Thread-safe STRtree of live segments, rebuilt lazily after changes.

    Each segment is indexed by its bounding box expanded by the search radius,
    so a query with a track's raw bounding box returns every segment whose
    geometry could lie within the radius of the track.
    """

    def __init__(
        self,
        *,
        search_radius_m: float = MATCHING_SEARCH_RADIUS_M,
        query_timeout_s: float = SPATIAL_QUERY_TIMEOUT_SECONDS,
        max_workers: int = SPATIAL_QUERY_WORKERS,
    ) -> None:
        self.search_radius_m = search_radius_m
        self.query_timeout_s = query_timeout_s
        self._entries: Dict[str, IndexedSegment] = {}
        self._tree: Optional[STRtree] = None
        self._tree_ids: List[str] = []
        self._dirty = True
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers if max_workers > 0 else (os.cpu_count() or 1),
            thread_name_prefix="spatial-query",
        )
        self._log = logging.getLogger(self.__class__.__name__)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, segment_id: object) -> bool:
        with self._lock:
            return segment_id in self._entries

    def add(self, segment_id: str, bbox: BBox, activity_type: Optional[str] = None) -> None:
        with self._lock:
            self._entries[segment_id] = IndexedSegment(segment_id, bbox, activity_type)
            self._dirty = True

    def remove(self, segment_id: str) -> None:
        with self._lock:
            if self._entries.pop(segment_id, None) is not None:
                self._dirty = True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._dirty = True

    def load(self, session: Session) -> int:
        """Replace the index contents with every live segment in the database."""

        rows = session.execute(
            select(
                Segment.id,
                Segment.min_lon,
                Segment.min_lat,
                Segment.max_lon,
                Segment.max_lat,
                Segment.activity_type,
            ).where(Segment.deleted_at.is_(None))
        ).all()
        with self._lock:
            self._entries = {
                row.id: IndexedSegment(
                    row.id,
                    (row.min_lon, row.min_lat, row.max_lon, row.max_lat),
                    row.activity_type,
                )
                for row in rows
            }
            self._dirty = True
        self._log.info("Loaded %d segments into the spatial index", len(rows))
        return len(rows)

    def candidates(self, bbox: BBox) -> List[str]:
        """Return ids of segments whose expanded bounds intersect ``bbox``.

        Raises:
            SpatialQueryTimeoutError: the query exceeded ``query_timeout_s``.
            SpatialQueryError: the query failed.
        """

        return self._run_with_timeout(lambda: self._query(bbox))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _query(self, bbox: BBox) -> List[str]:
        tree, ids = self._current_tree()
        if tree is None:
            return []
        hits = tree.query(shapely.box(*bbox), predicate="intersects")
        return sorted(ids[int(i)] for i in hits)

    def _current_tree(self) -> Tuple[Optional[STRtree], List[str]]:
        with self._lock:
            if self._dirty:
                self._tree_ids = list(self._entries)
                if self._tree_ids:
                    boxes = [
                        shapely.box(*expand_bbox(self._entries[sid].bbox, self.search_radius_m))
                        for sid in self._tree_ids
                    ]
                    self._tree = STRtree(boxes)
                else:
                    self._tree = None
                self._dirty = False
            return self._tree, self._tree_ids

    def _run_with_timeout(self, func: Callable[[], T]) -> T:
        """Run ``func`` on the query pool; the timeout starts once it is running."""

        started = threading.Event()

        def _timed() -> T:
            started.set()
            return func()

        future = self._executor.submit(_timed)
        while not started.wait(0.05):
            if future.done():
                break
        try:
            return future.result(timeout=self.query_timeout_s)
        except FutureTimeout as exc:
            future.cancel()
            raise SpatialQueryTimeoutError(
                f"Spatial query exceeded {self.query_timeout_s:.1f}s"
            ) from exc
        except Exception as exc:
            raise SpatialQueryError(f"Spatial query failed: {exc}") from exc


__all__ = ["BBox", "IndexedSegment", "SegmentIndex", "bbox_of", "expand_bbox"]
