import pytest

from core.exceptions import StorageError
from services.scheduler import TaskScheduler
from services.task_tools import TaskTools

from fakes import FakeExecutor


@pytest.fixture
def scheduler(task_store):
    return TaskScheduler(task_store, FakeExecutor(response="x" * 3000))


@pytest.fixture
def tools(task_store, scheduler):
    return TaskTools(task_store, scheduler)


@pytest.mark.asyncio
async def test_create_task_returns_summary(tools, task_store):
    result = await tools.create_task(
        "Daily digest", "0 8 * * *", "Summarize my emails",
        delivery='{"type":"slack","channel":"#digest"}'
    )

    assert result["created"] is True
    assert result["name"] == "Daily digest"
    assert result["nextRun"].endswith("T08:00:00+00:00")

    task = await task_store.get_task(result["id"])
    assert task.delivery_config == {"type": "slack", "channel": "#digest"}


@pytest.mark.asyncio
async def test_create_task_rejects_bad_cron(tools, task_store):
    result = await tools.create_task("Broken", "every day", "p")

    assert result == {"error": 'Invalid cron expression: "every day" (expected 5 or 6 fields, got 2)'}
    assert await task_store.count_tasks() == 0


@pytest.mark.asyncio
async def test_create_task_rejects_bad_delivery(tools, task_store):
    result = await tools.create_task("Digest", "0 8 * * *", "p", delivery="{not json")

    assert "error" in result
    assert await task_store.count_tasks() == 0


@pytest.mark.asyncio
async def test_create_task_arms_running_scheduler(tools, scheduler):
    await scheduler.start()
    try:
        result = await tools.create_task("Digest", "0 8 * * *", "p")
        assert scheduler.armed_task_ids() == [result["id"]]
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_list_tasks_clips_prompt(tools):
    await tools.create_task("Long", "0 8 * * *", "p" * 500)

    listing = await tools.list_tasks()

    assert listing["count"] == 1
    entry = listing["tasks"][0]
    assert len(entry["prompt"]) == 200
    assert entry["enabled"] is True
    assert entry["lastRunAt"] is None
    assert entry["delivery"] == {}


@pytest.mark.asyncio
async def test_update_task(tools, task_store):
    created = await tools.create_task("Digest", "0 8 * * *", "p")

    result = await tools.update_task(created["id"], name="Morning digest", enabled=False)

    assert result == {"updated": True, "id": created["id"]}
    task = await task_store.get_task(created["id"])
    assert task.name == "Morning digest"
    assert task.enabled is False
    assert task.prompt == "p"


@pytest.mark.asyncio
async def test_update_task_errors(tools):
    created = await tools.create_task("Digest", "0 8 * * *", "p")

    assert await tools.update_task("missing", name="x") == {"error": "Task missing not found"}
    bad = await tools.update_task(created["id"], cron="99 * * * *")
    assert bad["error"].startswith('Invalid cron expression: "99 * * * *"')


@pytest.mark.asyncio
async def test_delete_task(tools, task_store):
    created = await tools.create_task("Digest", "0 8 * * *", "p")

    assert await tools.delete_task(created["id"]) == {"deleted": True, "id": created["id"], "name": "Digest"}
    assert await task_store.get_task(created["id"]) is None
    assert await tools.delete_task(created["id"]) == {"error": f"Task {created['id']} not found"}


@pytest.mark.asyncio
async def test_run_task_now_clips_result_and_lists_runs(tools):
    created = await tools.create_task("Digest", "0 8 * * *", "p")

    result = await tools.run_task_now(created["id"])

    assert result["executed"] is True
    assert len(result["result"]) == 2000

    history = await tools.list_task_runs(created["id"])
    assert history["count"] == 1
    assert history["runs"][0]["status"] == "success"
    assert len(history["runs"][0]["result"]) == 500
    assert history["runs"][0]["finishedAt"] is not None


@pytest.mark.asyncio
async def test_run_task_now_errors(task_store):
    class BrokenScheduler:
        async def run_now(self, task_id):
            raise StorageError("disk gone")

    assert await TaskTools(task_store).run_task_now("t1") == {"error": "Scheduler not available"}
    assert await TaskTools(task_store, BrokenScheduler()).run_task_now("t1") == {"error": "disk gone"}

    tools = TaskTools(task_store, TaskScheduler(task_store, FakeExecutor()))
    assert await tools.run_task_now("missing") == {"error": "Task missing not found"}
