import json

import pytest

from qos_library import RequestRateTracker

NOW_MS = 1_800_000_000_000.0


@pytest.mark.asyncio
async def test_empty_tracker(tmp_path) -> None:
    snapshot = await RequestRateTracker(tmp_path / "rpm.json").read(NOW_MS)
    assert (snapshot.count, snapshot.percent, snapshot.remaining_sec) == (0, 0, 0)
    assert snapshot.limit == 60


@pytest.mark.asyncio
async def test_counts_only_requests_inside_window(tmp_path) -> None:
    path = tmp_path / "rpm.json"
    path.write_text(
        json.dumps({"timestamps": [NOW_MS - 90_000, NOW_MS - 42_000, NOW_MS - 1_000, "x"]}),
        encoding="utf-8",
    )
    snapshot = await RequestRateTracker(path).read(NOW_MS)

    assert snapshot.count == 2
    assert snapshot.percent == 3
    # Oldest request leaves the window in 18 s, shown as 20 s
    assert snapshot.remaining_sec == 20


@pytest.mark.asyncio
async def test_record_prunes_and_appends(tmp_path) -> None:
    path = tmp_path / "rpm.json"
    tracker = RequestRateTracker(path)
    path.write_text(json.dumps({"timestamps": [NOW_MS - 120_000]}), encoding="utf-8")

    assert await tracker.record(NOW_MS)
    assert await tracker.record(NOW_MS + 500)

    assert json.loads(path.read_text(encoding="utf-8")) == {
        "timestamps": [NOW_MS, NOW_MS + 500]
    }
    snapshot = await tracker.read(NOW_MS + 1_000)
    assert snapshot.count == 2
    assert snapshot.remaining_sec == 60


@pytest.mark.asyncio
async def test_percent_is_capped(tmp_path) -> None:
    path = tmp_path / "rpm.json"
    path.write_text(
        json.dumps({"timestamps": [NOW_MS - i for i in range(75)]}), encoding="utf-8"
    )
    snapshot = await RequestRateTracker(path).read(NOW_MS)
    assert snapshot.count == 75
    assert snapshot.percent == 100
