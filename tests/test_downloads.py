import asyncio

import pytest

from bridge_scraper.engine.downloads import DownloadRecord, DownloadWatcher, rename_with_prefix
from bridge_scraper.engine.errors import DownloadTimedOut


def test_in_progress_file_is_picked_up_once_renamed(tmp_path, clock):
    (tmp_path / "a.csv").write_text("old")
    watcher = DownloadWatcher(tmp_path, clock=clock)

    async def trigger():
        (tmp_path / "b.csv.crdownload").write_text("partial")

    def finish(count):
        if count == 3:
            (tmp_path / "b.csv.crdownload").rename(tmp_path / "b.csv")

    clock.on_sleep = finish

    path = asyncio.run(watcher.trigger_and_await(trigger, timeout=30))

    assert path == tmp_path / "b.csv"
    assert len(clock.sleeps) == 3


def test_nothing_new_times_out(tmp_path, clock):
    (tmp_path / "a.csv").write_text("old")
    watcher = DownloadWatcher(tmp_path, clock=clock)

    async def trigger():
        (tmp_path / "b.csv.part").write_text("never finishes")

    with pytest.raises(DownloadTimedOut):
        asyncio.run(watcher.trigger_and_await(trigger, timeout=5))

    assert sum(clock.sleeps) >= 5


def test_opaque_name_is_given_expected_extension(tmp_path, clock):
    watcher = DownloadWatcher(tmp_path, min_bytes=10, clock=clock)
    guid = "6f1c2a4e-9d3b-4c1e-8a3f-0b2d7e5c9a10"

    async def trigger():
        (tmp_path / guid).write_bytes(b"x" * 64)

    path = asyncio.run(watcher.trigger_and_await(trigger, expected_extension=".csv"))

    assert path == tmp_path / f"{guid}.csv"
    assert path.exists()
    assert not (tmp_path / guid).exists()


def test_opaque_placeholder_below_threshold_is_ignored(tmp_path):
    watcher = DownloadWatcher(tmp_path, min_bytes=10)
    placeholder = tmp_path / "6f1c2a4e"
    placeholder.write_bytes(b"")

    assert watcher.find_completed(DownloadRecord()) is None


def test_existing_override_replaces_snapshot(tmp_path, clock):
    earlier = tmp_path / "earlier.csv"
    earlier.write_text("from a concurrent session")
    watcher = DownloadWatcher(tmp_path, clock=clock)

    async def trigger():
        return None

    path = asyncio.run(watcher.trigger_and_await(trigger, existing=set()))

    assert path == earlier


def test_missing_directory_is_created(tmp_path, clock):
    target = tmp_path / "nested" / "downloads"
    watcher = DownloadWatcher(target, clock=clock)

    async def trigger():
        (target / "meisai.csv").write_text("data")

    assert asyncio.run(watcher.trigger_and_await(trigger)) == target / "meisai.csv"


def test_rename_with_prefix(tmp_path):
    path = tmp_path / "meisai.csv"
    path.write_text("data")

    renamed = rename_with_prefix(path, "user01")

    assert renamed == tmp_path / "user01_meisai.csv"
    assert renamed.read_text() == "data"
    assert not path.exists()


def test_rename_with_prefix_moves_into_directory(tmp_path):
    staging = tmp_path / ".user01_staging"
    staging.mkdir()
    path = staging / "meisai.csv"
    path.write_text("new")
    (tmp_path / "user01_meisai.csv").write_text("last month")

    renamed = rename_with_prefix(path, "user01", directory=tmp_path)

    assert renamed == tmp_path / "user01_meisai.csv"
    assert renamed.read_text() == "new"
    assert list(staging.iterdir()) == []
