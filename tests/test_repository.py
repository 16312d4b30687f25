import asyncio

import aiosqlite

from bridge_scraper.database.models import initialize_db
from bridge_scraper.database.repository import RunRepository
from bridge_scraper.models.session import SavedCookie


def with_repo(tmp_path, body):
    async def _run():
        db = await aiosqlite.connect(str(tmp_path / "runs.db"))
        db.row_factory = aiosqlite.Row
        await initialize_db(db)
        try:
            return await body(RunRepository(db))
        finally:
            await db.close()

    return asyncio.run(_run())


def test_run_lifecycle(tmp_path):
    async def body(repo):
        run_id = await repo.start_run("vehicles", "acme/driver01")
        started = await repo.get_run(run_id)
        await repo.finish_run(run_id, session_id="session_1", record_count=12, artifact_count=2, output_path="/d/v.json")
        return started, await repo.get_run(run_id)

    started, finished = with_repo(tmp_path, body)

    assert started.status == "running"
    assert started.completed_at is None
    assert finished.status == "completed"
    assert finished.record_count == 12
    assert finished.artifact_count == 2
    assert finished.session_id == "session_1"
    assert finished.completed_at is not None


def test_failed_run_keeps_error_code(tmp_path):
    async def body(repo):
        run_id = await repo.start_run("etc_csv", "etc01")
        await repo.fail_run(run_id, "login_failed", "[login_verify] Login verification failed")
        return await repo.get_run(run_id)

    run = with_repo(tmp_path, body)

    assert run.status == "failed"
    assert run.error_code == "login_failed"


def test_list_runs_filters_and_orders(tmp_path):
    async def body(repo):
        first = await repo.start_run("vehicles")
        second = await repo.start_run("etc_csv")
        third = await repo.start_run("vehicles")
        await repo.finish_run(first)
        return (
            await repo.list_runs(),
            await repo.list_runs(kind="vehicles"),
            await repo.list_runs(kind="vehicles", status="completed"),
            await repo.list_runs(limit=1),
            (first, second, third),
        )

    everything, vehicles, completed, latest, ids = with_repo(tmp_path, body)

    assert [r.id for r in everything] == list(reversed(ids))
    assert [r.kind for r in vehicles] == ["vehicles", "vehicles"]
    assert [r.id for r in completed] == [ids[0]]
    assert [r.id for r in latest] == [ids[2]]


def test_stats(tmp_path):
    async def body(repo):
        ok = await repo.start_run("vehicles")
        await repo.finish_run(ok, record_count=5)
        bad = await repo.start_run("vehicles")
        await repo.fail_run(bad, "retries_exhausted", "gave up")
        await repo.start_run("etc_csv")
        return await repo.get_stats(), await repo.get_run_count()

    stats, count = with_repo(tmp_path, body)

    assert count == 3
    assert stats["total_runs"] == 3
    assert stats["status_breakdown"] == {"completed": 1, "failed": 1, "running": 1}
    assert stats["kind_breakdown"] == {"vehicles": 2, "etc_csv": 1}
    assert stats["total_records"] == 5
    assert stats["error_breakdown"] == {"retries_exhausted": 1}
    assert stats["last_success_time"] is not None


def test_empty_stats(tmp_path):
    async def body(repo):
        return await repo.get_stats()

    stats = with_repo(tmp_path, body)

    assert stats["total_runs"] == 0
    assert stats["total_records"] == 0
    assert stats["last_success_time"] is None


def test_cookies_are_replaced_per_account(tmp_path):
    async def body(repo):
        await repo.save_cookies("acme/a", [SavedCookie(name="old", value="1", domain="d")])
        await repo.save_cookies("acme/a", [SavedCookie(name="sid", value="2", domain="d")])
        await repo.save_cookies("acme/b", [SavedCookie(name="sid", value="3", domain="d")])
        return await repo.load_cookies("acme/a"), await repo.load_cookies("nobody")

    cookies, none = with_repo(tmp_path, body)

    assert [(c.name, c.value) for c in cookies] == [("sid", "2")]
    assert none == []


def test_stale_cookies_are_not_replayed(tmp_path):
    async def body(repo):
        await repo.save_cookies("acme/a", [SavedCookie(name="sid", value="2", domain="d")])
        await repo._db.execute("UPDATE session_cookies SET saved_at = '2000-01-01T00:00:00'")
        await repo._db.commit()
        return await repo.load_cookies("acme/a", max_age_seconds=3600), await repo.load_cookies("acme/a")

    fresh, unlimited = with_repo(tmp_path, body)

    assert fresh == []
    assert len(unlimited) == 1
