"""Command line entry point for local use of the segment engine.

Usage:
    python -m trail_segments init-db
    python -m trail_segments ingest activity.json --user-id u1
    python -m trail_segments create-segment climb.json --creator-id u1 --name "Hill"
    python -m trail_segments leaderboard <segment-id> --scope week
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence

from .activity_queue import ActivityQueue
from .config import DATABASE_URL, LOG_LEVEL
from .db.session import Database
from .errors import (
    SegmentNotFoundError,
    SegmentValidationError,
    SimilarSegmentsExistError,
    TrackValidationError,
)
from .geometry.spatial_index import SegmentIndex
from .models import (
    ALL,
    ActivitySubmission,
    LeaderboardQuery,
    LeaderboardScope,
    TrackPoint,
)
from .processor import ActivityProcessor
from .services.leaderboard import LeaderboardCache
from .services.segments import SegmentService
from .utils import format_time

LOGGER = logging.getLogger(__name__)


def _setup_logging(level: str = LOG_LEVEL) -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.INFO),
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def _read_points(path: Path) -> tuple[dict[str, Any], List[TrackPoint]]:
    """Load a JSON point stream.

    Accepts either a bare list of point objects or an object with a
    ``points`` list plus optional metadata (``activity_id``, ``name``,
    ``activity_type``).
    """
    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, list):
        meta: dict[str, Any] = {}
        raw_points = payload
    else:
        meta = dict(payload)
        raw_points = meta.pop("points", [])
    return meta, [TrackPoint.from_mapping(item) for item in raw_points]


def _cmd_init_db(args: argparse.Namespace, database: Database) -> int:
    database.create_all()
    LOGGER.info("Schema created at %s", args.database_url)
    return 0


def _cmd_ingest(args: argparse.Namespace, database: Database) -> int:
    index = SegmentIndex()
    with database.session_scope() as session:
        index.load(session)
    processor = ActivityProcessor(database, index)

    exit_code = 0
    with ActivityQueue(processor, max_workers=args.workers) as activity_queue:
        futures = []
        for path in args.files:
            meta, points = _read_points(Path(path))
            submission = ActivitySubmission(
                activity_id=str(meta.get("activity_id") or Path(path).stem),
                user_id=str(meta.get("user_id") or args.user_id),
                points=points,
                name=meta.get("name"),
                activity_type=meta.get("activity_type") or args.activity_type,
            )
            try:
                futures.append(activity_queue.submit(submission))
            except TrackValidationError as exc:
                LOGGER.error("Skipping %s: %s", path, exc)
                exit_code = 1
        for future in futures:
            outcome = future.result()
            if not outcome.ok:
                LOGGER.error("Activity %s failed: %s", outcome.key, outcome.error)
                exit_code = 1
                continue
            for effort in outcome.result.efforts:
                marker = "PR" if effort.is_personal_record else ""
                print(
                    f"{outcome.key}\t{effort.segment_id}\t{effort.elapsed_time_s:.1f}s\t{marker}"
                )
    index.close()
    return exit_code


def _cmd_create_segment(args: argparse.Namespace, database: Database) -> int:
    index = SegmentIndex()
    with database.session_scope() as session:
        index.load(session)
    try:
        return _create_segment(args, database, index)
    finally:
        index.close()


def _create_segment(args: argparse.Namespace, database: Database, index: SegmentIndex) -> int:
    service = SegmentService(index)
    _meta, points = _read_points(Path(args.file))
    with database.session_scope() as session:
        try:
            segment = service.create_segment(
                session,
                creator_id=args.creator_id,
                name=args.name,
                points=points,
                activity_type=args.activity_type,
            )
        except SimilarSegmentsExistError as exc:
            LOGGER.error("%s: %s", exc, ", ".join(s.id for s in exc.similar))
            return 1
        except SegmentValidationError as exc:
            LOGGER.error("Invalid segment: %s", exc)
            return 1
        segment_id = segment.id
    print(segment_id)

    if args.backfill:
        processor = ActivityProcessor(database, index)
        with ActivityQueue(processor, max_workers=1) as activity_queue:
            outcome = activity_queue.submit_segment_backfill(segment_id).result()
        if not outcome.ok:
            LOGGER.error("Backfill failed: %s", outcome.error)
            return 1
        LOGGER.info("Backfill created %d efforts", outcome.result.efforts_created)
    return 0


def _cmd_leaderboard(args: argparse.Namespace, database: Database) -> int:
    query = LeaderboardQuery(
        segment_id=args.segment_id,
        scope=LeaderboardScope(args.scope),
        scope_value=args.scope_value,
        gender=args.gender,
        age_group=args.age_group,
        limit=args.limit,
        offset=args.offset,
    )
    try:
        with database.session_scope() as session:
            page = LeaderboardCache().get_leaderboard(session, query)
    except (SegmentNotFoundError, ValueError) as exc:
        LOGGER.error("Cannot build leaderboard: %s", exc)
        return 1
    if args.json:
        print(
            json.dumps(
                {
                    "scope_value": page.scope_value,
                    "total_count": page.total_count,
                    "entries": [entry.to_dict() for entry in page.entries],
                },
                indent=2,
            )
        )
        return 0
    for entry in page.entries:
        print(
            f"{entry.rank:>4}  {entry.user_id:<24} {format_time(entry.elapsed_time_s):>9}  "
            f"{entry.achieved_at:%Y-%m-%d}"
        )
    print(f"{page.total_count} athletes ({page.scope_value})")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trail_segments",
        description="Match GPS activities against trail segments and rank efforts",
    )
    parser.add_argument(
        "--database-url",
        default=DATABASE_URL,
        help="SQLAlchemy database URL (default from TRAIL_DATABASE_URL)",
    )
    parser.add_argument(
        "--log-level",
        default=LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Python logging level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    ingest = sub.add_parser("ingest", help="Process JSON point streams")
    ingest.add_argument("files", nargs="+", help="JSON files with activity points")
    ingest.add_argument("--user-id", default="local", help="Owner when the file has none")
    ingest.add_argument("--activity-type", help="Activity type when the file has none")
    ingest.add_argument("--workers", type=int, default=None, help="Worker threads")

    create = sub.add_parser("create-segment", help="Create a segment from a JSON point list")
    create.add_argument("file", help="JSON file with segment points")
    create.add_argument("--creator-id", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--activity-type")
    create.add_argument(
        "--backfill",
        action="store_true",
        help="Match the new segment against stored activities",
    )

    board = sub.add_parser("leaderboard", help="Print a segment leaderboard")
    board.add_argument("segment_id")
    board.add_argument(
        "--scope",
        choices=[scope.value for scope in LeaderboardScope],
        default=LeaderboardScope.ALL_TIME.value,
    )
    board.add_argument("--scope-value", help="e.g. 2024, 2024-05 or 2024-W19")
    board.add_argument("--gender", default=ALL)
    board.add_argument("--age-group", default=ALL)
    board.add_argument("--limit", type=int, default=50)
    board.add_argument("--offset", type=int, default=0)
    board.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    return parser


_COMMANDS = {
    "init-db": _cmd_init_db,
    "ingest": _cmd_ingest,
    "create-segment": _cmd_create_segment,
    "leaderboard": _cmd_leaderboard,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    database = Database(args.database_url)
    try:
        if args.command != "init-db":
            database.create_all()
        return _COMMANDS[args.command](args, database)
    finally:
        database.dispose()
