"""Geometry helpers: projection to a local metric CRS, validation and indexing."""

from .preprocessing import (
    PreparedSegment,
    PreparedTrack,
    build_local_transformer,
    cumulative_distances,
    decode_polyline,
    prepare_segment,
    prepare_track,
    resample_by_distance,
)
from .projection import Visit, coverage_ratio, interpolate_at_distance, locate_visits
from .spatial_index import SegmentIndex, bbox_of, expand_bbox
from .validation import path_length_m, validate_segment_geometry, validate_track

__all__ = [
    "PreparedSegment",
    "PreparedTrack",
    "SegmentIndex",
    "Visit",
    "bbox_of",
    "build_local_transformer",
    "coverage_ratio",
    "cumulative_distances",
    "decode_polyline",
    "expand_bbox",
    "interpolate_at_distance",
    "locate_visits",
    "path_length_m",
    "prepare_segment",
    "prepare_track",
    "resample_by_distance",
    "validate_segment_geometry",
    "validate_track",
]
