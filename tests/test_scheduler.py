import asyncio
import time
from datetime import datetime, timezone

import pytest

from core.exceptions import ExecutionError
from models.tasks import RunStatus
from services.cron import next_fire_time
from services.scheduler import NO_OUTPUT_TEXT, TaskScheduler, build_prompt

from fakes import FakeExecutor

EVERY_SECOND = "* * * * * *"


async def wait_for_runs(task_store, task_id, count, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        runs = [r for r in await task_store.list_runs(task_id, 50) if r.status.is_finished]
        if len(runs) >= count or asyncio.get_running_loop().time() > deadline:
            return runs
        await asyncio.sleep(0.1)


@pytest.mark.asyncio
async def test_run_now_records_success_and_keeps_next_run(task_store):
    # Scenario A
    executor = FakeExecutor(response="3 new emails")
    scheduler = TaskScheduler(task_store, executor)
    delivery = {"type": "slack", "channel": "#digest"}
    task = await task_store.create_task("digest", "Daily digest", "0 8 * * *",
                                        "Summarize my emails", delivery_config=delivery)

    expected_next = next_fire_time("0 8 * * *").timestamp()
    assert task.next_run_at == pytest.approx(expected_next, abs=1)
    assert datetime.fromtimestamp(task.next_run_at, tz=timezone.utc).hour == 8

    result = await scheduler.run_now("digest")

    assert result == "3 new emails"
    runs = await task_store.list_runs("digest")
    assert len(runs) == 1
    assert runs[0].status is RunStatus.SUCCESS
    assert runs[0].result == "3 new emails"
    assert runs[0].finished_at is not None

    stored = await task_store.get_task("digest")
    assert stored.next_run_at == task.next_run_at
    assert stored.last_run_at is not None
    assert executor.prompts == [build_prompt(task)]


@pytest.mark.asyncio
async def test_run_now_records_executor_failure(task_store):
    scheduler = TaskScheduler(task_store, FakeExecutor(error=ExecutionError("agent offline")))
    await task_store.create_task("t1", "Digest", "0 8 * * *", "Summarize")

    result = await scheduler.run_now("t1")

    assert result == "agent offline"
    runs = await task_store.list_runs("t1")
    assert runs[0].status is RunStatus.ERROR
    assert runs[0].result == "agent offline"
    assert (await task_store.get_task("t1")).enabled is True


@pytest.mark.asyncio
async def test_run_now_unknown_task_returns_none(task_store):
    scheduler = TaskScheduler(task_store, FakeExecutor())

    assert await scheduler.run_now("missing") is None


@pytest.mark.asyncio
async def test_empty_response_recorded_as_no_output(task_store):
    scheduler = TaskScheduler(task_store, FakeExecutor(response=None))
    await task_store.create_task("t1", "Digest", "0 8 * * *", "Summarize")

    assert await scheduler.run_now("t1") == NO_OUTPUT_TEXT


@pytest.mark.asyncio
async def test_plain_coroutine_function_accepted_as_executor(task_store):
    async def respond(prompt):
        return prompt.upper()

    scheduler = TaskScheduler(task_store, respond)
    await task_store.create_task("t1", "Shout", "0 8 * * *", "hello")

    assert await scheduler.run_now("t1") == "HELLO"


def test_build_prompt_appends_delivery_instruction():
    class Task:
        prompt = "Summarize"
        delivery_config = {"type": "slack", "channel": "#digest"}

    prompt = build_prompt(Task)

    assert prompt.startswith("Summarize\n\nAfter completing the task")
    assert prompt.endswith('{"type":"slack","channel":"#digest"}')

    Task.delivery_config = {"channel": "#digest"}
    assert build_prompt(Task) == "Summarize"


@pytest.mark.asyncio
async def test_start_arms_enabled_tasks_only(task_store):
    scheduler = TaskScheduler(task_store, FakeExecutor())
    await task_store.create_task("on", "On", "0 8 * * *", "p")
    await task_store.create_task("off", "Off", "0 8 * * *", "p")
    await task_store.update_task("off", {"enabled": False})

    await scheduler.start()
    await scheduler.start()
    try:
        assert scheduler.is_running
        assert scheduler.armed_task_ids() == ["on"]
    finally:
        scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.armed_task_ids() == []


@pytest.mark.asyncio
async def test_timer_fires_and_records_runs(task_store):
    executor = FakeExecutor(response="tick")
    scheduler = TaskScheduler(task_store, executor)
    await task_store.create_task("t1", "Tick", EVERY_SECOND, "tick")

    await scheduler.start()
    try:
        runs = await wait_for_runs(task_store, "t1", 1)
    finally:
        scheduler.stop()
        await scheduler.drain()

    assert runs and runs[0].status is RunStatus.SUCCESS
    task = await task_store.get_task("t1")
    assert task.last_run_at is not None
    assert task.next_run_at is not None


@pytest.mark.asyncio
async def test_failing_task_does_not_affect_others(task_store):
    class SelectiveExecutor:
        async def execute(self, prompt):
            if prompt == "fail":
                raise RuntimeError("broken task")
            return "fine"

    scheduler = TaskScheduler(task_store, SelectiveExecutor())
    await task_store.create_task("bad", "Bad", EVERY_SECOND, "fail")
    await task_store.create_task("good", "Good", EVERY_SECOND, "work")

    await scheduler.start()
    try:
        bad_runs = await wait_for_runs(task_store, "bad", 2)
        good_runs = await wait_for_runs(task_store, "good", 2)
        assert scheduler.is_running
        assert sorted(scheduler.armed_task_ids()) == ["bad", "good"]
    finally:
        scheduler.stop()
        await scheduler.drain()

    assert len(bad_runs) >= 2
    assert all(r.status is RunStatus.ERROR for r in bad_runs)
    assert all(r.status is RunStatus.SUCCESS for r in good_runs)


@pytest.mark.asyncio
async def test_stop_does_not_cancel_inflight_execution(task_store):
    started = asyncio.Event()
    release = asyncio.Event()

    class SlowExecutor:
        async def execute(self, prompt):
            started.set()
            await release.wait()
            return "finished"

    scheduler = TaskScheduler(task_store, SlowExecutor())
    await task_store.create_task("slow", "Slow", EVERY_SECOND, "slow")

    await scheduler.start()
    await asyncio.wait_for(started.wait(), timeout=5)
    scheduler.stop()

    release.set()
    await scheduler.drain()

    runs = await task_store.list_runs("slow")
    assert runs[0].status is RunStatus.SUCCESS
    assert runs[0].result == "finished"


@pytest.mark.asyncio
async def test_reload_disarms_disabled_task(task_store):
    # Scenario C
    scheduler = TaskScheduler(task_store, FakeExecutor())
    await task_store.create_task("t1", "Every minute", "* * * * *", "ping")
    await scheduler.start()
    try:
        assert "t1" in scheduler.armed_task_ids()

        await task_store.update_task("t1", {"enabled": False})
        assert await scheduler.reload("t1") is False

        assert scheduler.armed_task_ids() == []
        assert await task_store.get_due_tasks() == []
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_reload_picks_up_new_and_edited_tasks(task_store):
    scheduler = TaskScheduler(task_store, FakeExecutor())
    await scheduler.start()
    try:
        await task_store.create_task("t1", "Later", "0 8 * * *", "p")
        assert await scheduler.reload("t1") is True
        assert scheduler.armed_task_ids() == ["t1"]

        await task_store.update_task("t1", {"cron": "30 9 * * *"})
        await scheduler.reload("t1")

        task = await task_store.get_task("t1")
        fires_at = datetime.fromtimestamp(task.next_run_at, tz=timezone.utc)
        assert (fires_at.hour, fires_at.minute) == (9, 30)
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_reload_when_stopped_arms_nothing(task_store):
    scheduler = TaskScheduler(task_store, FakeExecutor())
    await task_store.create_task("t1", "Later", "0 8 * * *", "p")

    assert await scheduler.reload("t1") is False
    assert scheduler.armed_task_ids() == []


@pytest.mark.asyncio
async def test_remove_leaves_task_stored(task_store):
    scheduler = TaskScheduler(task_store, FakeExecutor())
    await task_store.create_task("t1", "Later", "0 8 * * *", "p")
    await scheduler.start()
    try:
        assert scheduler.remove("t1") is True
        assert scheduler.remove("t1") is False
        assert scheduler.armed_task_ids() == []
        assert await task_store.get_task("t1") is not None
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_schedulers_do_not_share_timers(task_store):
    first = TaskScheduler(task_store, FakeExecutor())
    second = TaskScheduler(task_store, FakeExecutor())
    await task_store.create_task("t1", "Later", "0 8 * * *", "p")

    await first.start()
    await second.start()
    try:
        first.stop()
        assert second.armed_task_ids() == ["t1"]
    finally:
        second.stop()


@pytest.mark.asyncio
async def test_run_due_tasks_executes_overdue_tasks(task_store):
    executor = FakeExecutor()
    scheduler = TaskScheduler(task_store, executor)
    await task_store.create_task("due", "Due", "0 8 * * *", "due", next_run_at=1.0)
    await task_store.create_task("later", "Later", "0 8 * * *", "later")

    assert await scheduler.run_due_tasks() == 1
    assert executor.prompts == ["due"]


@pytest.mark.asyncio
async def test_catch_up_runs_missed_tasks_on_start(task_store):
    executor = FakeExecutor()
    scheduler = TaskScheduler(task_store, executor, catch_up=True)
    await task_store.create_task("missed", "Missed", "0 8 * * *", "missed", next_run_at=1.0)

    await scheduler.start()
    try:
        assert executor.prompts == ["missed"]
        task = await task_store.get_task("missed")
        assert task.next_run_at > 1.0
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_polling_twice_runs_due_task_once(task_store):
    executor = FakeExecutor()
    scheduler = TaskScheduler(task_store, executor)
    await task_store.create_task("due", "Due", "0 8 * * *", "due", next_run_at=1.0)
    before = time.time()

    assert await scheduler.run_due_tasks() == 1
    assert await scheduler.run_due_tasks() == 0

    assert executor.prompts == ["due"]
    task = await task_store.get_task("due")
    assert task.last_run_at >= before
    assert task.next_run_at > time.time()


@pytest.mark.asyncio
async def test_catch_up_records_single_run_and_rearms(task_store):
    executor = FakeExecutor()
    scheduler = TaskScheduler(task_store, executor, catch_up=True)
    await task_store.create_task("missed", "Missed", "0 8 * * *", "missed", next_run_at=1.0)

    await scheduler.start()
    try:
        assert scheduler.armed_task_ids() == ["missed"]
        assert await scheduler.run_due_tasks() == 0
        runs = await task_store.list_runs("missed")
        assert [r.status for r in runs] == [RunStatus.SUCCESS]
    finally:
        scheduler.stop()
