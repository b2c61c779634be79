"""Smoke tests for the command line entry point."""

from __future__ import annotations

import json

from conftest import T0, north_track, segment_points
from trail_segments.main import main


def _write_points(path, points, **meta) -> str:
    rows = [
        {"lon": p.lon, "lat": p.lat, "elevation": p.elevation, "timestamp": p.timestamp}
        for p in points
    ]
    payload = dict(meta, points=rows) if meta else rows
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_ingest_create_backfill_and_rank(tmp_path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    slow = _write_points(tmp_path / "slow.json", north_track(seconds_per_step=5.0))
    fast = _write_points(
        tmp_path / "fast.json",
        north_track(seconds_per_step=3.0, start_time=T0 + 3600),
        activity_id="act-fast",
        user_id="bob",
    )
    segment_file = _write_points(tmp_path / "segment.json", segment_points(20))

    assert main(["--database-url", url, "init-db"]) == 0
    assert main(["--database-url", url, "ingest", slow, "--user-id", "alice"]) == 0
    assert capsys.readouterr().out == ""

    assert main(
        [
            "--database-url",
            url,
            "create-segment",
            segment_file,
            "--creator-id",
            "alice",
            "--name",
            "Meridian",
            "--backfill",
        ]
    ) == 0
    segment_id = capsys.readouterr().out.strip()
    assert segment_id

    assert main(["--database-url", url, "ingest", fast]) == 0
    line = capsys.readouterr().out.strip()
    assert line.startswith(f"act-fast\t{segment_id}\t")
    assert line.endswith("PR")

    assert main(["--database-url", url, "leaderboard", segment_id, "--json"]) == 0
    board = json.loads(capsys.readouterr().out)
    assert board["total_count"] == 2
    assert [entry["user_id"] for entry in board["entries"]] == ["bob", "alice"]
    assert [entry["rank"] for entry in board["entries"]] == [1, 2]

    assert main(["--database-url", url, "leaderboard", segment_id]) == 0
    table = capsys.readouterr().out.splitlines()
    assert "bob" in table[0] and "1:00" in table[0]
    assert table[-1] == "2 athletes (all)"


def test_duplicate_segment_and_unknown_leaderboard_fail(tmp_path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    segment_file = _write_points(tmp_path / "segment.json", segment_points(20))
    create = ["--database-url", url, "create-segment", segment_file, "--creator-id", "a", "--name", "Hill"]

    assert main(create) == 0
    capsys.readouterr()
    assert main(create) == 1
    assert capsys.readouterr().out == ""
    assert main(["--database-url", url, "leaderboard", "missing"]) == 1
