from __future__ import annotations

import asyncio
import time

import pytest

from backend_store_tasks import (
    ConsumerConfig,
    InMemoryJobQueue,
    JobOptions,
    RetryPolicy,
    TasksPluginOptions,
    install,
    options_from_env,
)
from backend_store_tasks.engine import (
    JobConsumer,
    PrometheusConsumerMetrics,
    RedisJobQueue,
    create_job_queue,
    create_job_queue_from_env,
)


def run_async(coro):
    return asyncio.run(coro)


class _FakeRedis:
    """Dict-backed subset of ``redis.asyncio.Redis`` used by RedisJobQueue."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.brpoplpush_calls: list[tuple[str, str, int]] = []
        self.closed = False

    async def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hdel(self, key, field):
        self.hashes.get(key, {}).pop(field, None)

    async def hvals(self, key):
        return list(self.hashes.get(key, {}).values())

    async def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    async def smembers(self, key):
        return {m.encode() for m in self.sets.get(key, set())}

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def rpop(self, key):
        items = self.lists.get(key)
        if not items:
            return None
        return items.pop().encode()

    async def rpoplpush(self, src, dst):
        value = await self.rpop(src)
        if value is not None:
            self.lists.setdefault(dst, []).insert(0, value.decode())
        return value

    async def brpoplpush(self, src, dst, timeout=0):
        self.brpoplpush_calls.append((src, dst, timeout))
        return await self.rpoplpush(src, dst)

    async def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    async def zrem(self, key, member):
        self.zsets.get(key, {}).pop(member, None)

    async def zremrangebyscore(self, key, low, high):
        entries = self.zsets.get(key, {})
        for member, score in list(entries.items()):
            if score <= high:
                del entries[member]

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def aclose(self):
        self.closed = True


def test_in_memory_take_is_fifo_per_name():
    async def scenario() -> None:
        queue = InMemoryJobQueue()
        a1 = await queue.add("a", {"n": 1})
        await queue.add("b", {"n": 2})
        a2 = await queue.add("a", {"n": 3})

        first = await queue.take(["a"], timeout=0.1)
        second = await queue.take(["a"], timeout=0.1)
        assert first is not None and first.id == a1.id
        assert second is not None and second.id == a2.id
        assert first.status == "active"
        assert await queue.take(["a"], timeout=0.05) is None

        rest = await queue.take(None, timeout=0.1)
        assert rest is not None and rest.name == "b"

    run_async(scenario())


def test_take_waits_for_new_job():
    async def scenario() -> None:
        queue = InMemoryJobQueue()
        waiter = asyncio.create_task(queue.take(None, timeout=1.0))
        await asyncio.sleep(0.01)
        job = await queue.add("late", {})
        taken = await waiter
        assert taken is not None and taken.id == job.id

    run_async(scenario())


def test_retry_backoff_delays_next_attempt():
    async def scenario() -> None:
        queue = InMemoryJobQueue()
        options = JobOptions(
            attempts=2,
            remove_on_fail=False,
            backoff=RetryPolicy(backoff_base_s=0.2, backoff_max_s=0.2),
        )
        job = await queue.add("retry", {}, options)
        assert await queue.take(timeout=0.1) is not None

        failed = await queue.fail(job.id, error="boom")
        assert failed.status == "delayed"
        assert failed.next_attempt_at is not None

        assert await queue.take(timeout=0.05) is None
        replay = await queue.take(timeout=0.5)
        assert replay is not None and replay.id == job.id

        final = await queue.fail(job.id, error="boom again")
        assert final.status == "failed"
        assert final.attempts_made == 2

    run_async(scenario())


def test_terminal_state_is_immutable():
    async def scenario() -> None:
        queue = InMemoryJobQueue()
        job = await queue.add("x", {}, JobOptions(remove_on_complete=False))
        await queue.take(timeout=0.1)
        done = await queue.complete(job.id, result={"ok": True})
        assert done.status == "completed"

        again = await queue.fail(job.id, error="late")
        assert again.status == "completed"
        assert again.result == {"ok": True}

    run_async(scenario())


def test_listener_errors_do_not_break_emit():
    async def scenario() -> None:
        queue = InMemoryJobQueue()
        calls = []

        def broken(job, detail):
            raise RuntimeError("listener bug")

        async def healthy(job, detail):
            calls.append(detail)

        queue.on("completed", broken)
        queue.on("completed", healthy)
        job = await queue.add("x", {})
        await queue.emit("completed", job, "result")
        assert calls == ["result"]

        queue.off("completed", healthy)
        await queue.emit("completed", job, "again")
        assert calls == ["result"]

    run_async(scenario())


def test_unknown_event_rejected():
    with pytest.raises(ValueError, match="Unknown job event"):
        InMemoryJobQueue().on("progress", lambda job, detail: None)  # type: ignore[arg-type]


def test_consumer_records_handler_result():
    async def scenario() -> None:
        queue = InMemoryJobQueue()
        job = await queue.add("sum", {"a": 2, "b": 3}, JobOptions(remove_on_complete=False))

        async def handler(job):
            return {"sum": job.data["a"] + job.data["b"]}

        consumer = JobConsumer(queue, "sum", handler)
        taken = await queue.take(["sum"], timeout=0.1)
        assert taken is not None
        await consumer._execute_job(taken)  # noqa: SLF001

        stored = await queue.get_job(job.id)
        assert stored is not None
        assert stored.status == "completed"
        assert stored.result == {"sum": 5}

    run_async(scenario())


def test_redis_queue_add_and_take_named():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake, prefix="tests")
        job = await queue.add("task1", {"method": "task1"})

        assert job.id in fake.hashes["tests:jobs"]
        assert fake.sets["tests:names"] == {"task1"}
        assert fake.lists["tests:wait:task1"] == [job.id]

        taken = await queue.take(["task1"], timeout=0.5)
        assert taken is not None
        assert taken.id == job.id
        assert taken.data == {"method": "task1"}
        assert fake.brpoplpush_calls[0] == ("tests:wait:task1", "tests:claimed", 1)
        assert fake.lists["tests:claimed"] == [job.id]

    run_async(scenario())


def test_redis_queue_wildcard_serves_every_name_under_backlog():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake, prefix="tests")
        for _ in range(2):
            await queue.add("a", {})
            await queue.add("b", {})

        served = []
        for _ in range(4):
            taken = await queue.take(None, timeout=0.5)
            assert taken is not None
            served.append(taken.name)
            # keep "a" backlogged so a fixed key order would never reach "b"
            await queue.add("a", {})

        assert served == ["a", "b", "a", "b"]
        assert fake.brpoplpush_calls == []

    run_async(scenario())


def test_redis_queue_wildcard_waits_for_first_name():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake, prefix="tests", idle_poll_s=0.01)
        assert await queue.take(None, timeout=0.05) is None

        waiter = asyncio.create_task(queue.take(None, timeout=1.0))
        await asyncio.sleep(0.02)
        job = await queue.add("late", {})
        taken = await waiter
        assert taken is not None and taken.id == job.id

    run_async(scenario())


def test_redis_queue_releases_claim_on_complete_and_fail():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake, prefix="tests")
        done = await queue.add("task1", {})
        retried = await queue.add("task1", {}, JobOptions(attempts=2))

        await queue.take(["task1"], timeout=0.5)
        await queue.take(["task1"], timeout=0.5)
        assert sorted(fake.lists["tests:claimed"]) == sorted([done.id, retried.id])

        await queue.complete(done.id)
        failed = await queue.fail(retried.id, error="boom")

        assert fake.lists["tests:claimed"] == []
        assert failed.status == "waiting"
        assert fake.lists["tests:wait:task1"] == [retried.id]

    run_async(scenario())


def test_redis_queue_recovery_only_when_sole_consumer():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake, prefix="tests")
        job = await queue.add("task1", {})
        await queue.take(["task1"], timeout=0.5)

        await queue.register_consumer("other", ttl_s=30.0)
        await queue.register_consumer("me", ttl_s=30.0)
        assert await queue.live_consumer_count() == 2
        assert await queue.recover_if_sole_consumer("me") == 0
        assert fake.lists["tests:claimed"] == [job.id]

        await queue.unregister_consumer("other")
        assert await queue.recover_if_sole_consumer("me") == 1
        assert fake.lists["tests:claimed"] == []
        assert fake.lists["tests:wait:task1"] == [job.id]
        stored = await queue.get_job(job.id)
        assert stored is not None and stored.status == "waiting"

    run_async(scenario())


def test_expired_consumer_presence_is_not_counted():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake, prefix="tests")
        fake.zsets["tests:consumers"] = {"dead": time.time() - 1.0}
        await queue.register_consumer("me", ttl_s=30.0)
        assert await queue.live_consumer_count() == 1

        with pytest.raises(ValueError, match="ttl_s"):
            await queue.register_consumer("me", ttl_s=0)

    run_async(scenario())


def test_worker_restart_redelivers_job_claimed_by_crashed_consumer(
    worker_store, recorder_factory
):
    async def scenario() -> None:
        fake = _FakeRedis()
        crashed = RedisJobQueue(fake, prefix="tests")
        job = await crashed.add("testTask", {"method": "testTask", "payload": {"a": 1}})
        assert await crashed.take(["testTask"], timeout=0.5) is not None
        assert (await crashed.get_job(job.id)).status == "active"

        spy = recorder_factory()
        worker_store.define("testTask", spy)
        queue = RedisJobQueue(fake, prefix="tests")
        worker = install(
            worker_store,
            TasksPluginOptions(
                queue=queue,
                consumer_config=ConsumerConfig(poll_interval_s=0.05, shutdown_timeout_s=1.0),
            ),
        )
        done = asyncio.Event()
        queue.on("completed", lambda job, result: done.set())
        await worker.process_tasks("*")
        await asyncio.wait_for(done.wait(), timeout=2.0)
        await worker.stop_processing_tasks()

        assert [payload for payload, _ in spy.calls] == [{"a": 1}]
        assert await queue.get_job(job.id) is None
        assert fake.lists["tests:claimed"] == []
        assert fake.zsets["tests:consumers"] == {}

    run_async(scenario())


def test_job_cancelled_by_shutdown_counts_as_failed_attempt(worker_store):
    async def scenario() -> None:
        fake = _FakeRedis()
        started = asyncio.Event()
        calls = []

        async def slow(payload, method_context):
            calls.append(payload)
            if len(calls) == 1:
                started.set()
                await asyncio.sleep(5)

        worker_store.define("slow", slow)
        config = ConsumerConfig(poll_interval_s=0.05, shutdown_timeout_s=0.1)
        first = install(
            worker_store,
            TasksPluginOptions(queue=RedisJobQueue(fake, prefix="tests"), consumer_config=config),
        )
        failures = []
        first.task_queue.on("failed", lambda job, exc: failures.append((job, exc)))
        job = await first.create_task("slow", {"n": 1})
        await first.process_tasks("*")
        await asyncio.wait_for(started.wait(), timeout=2.0)
        await first.stop_processing_tasks()

        assert len(failures) == 1
        assert isinstance(failures[0][1], asyncio.CancelledError)
        restarted = RedisJobQueue(fake, prefix="tests")
        stored = await restarted.get_job(job.id)
        assert stored is not None
        assert stored.status == "waiting"
        assert stored.attempts_made == 1
        assert stored.error == "Job cancelled by consumer shutdown"
        assert fake.lists["tests:claimed"] == []

        second = install(
            worker_store,
            TasksPluginOptions(queue=restarted, consumer_config=config),
        )
        done = asyncio.Event()
        restarted.on("completed", lambda job, result: done.set())
        await second.process_tasks("*")
        await asyncio.wait_for(done.wait(), timeout=2.0)
        await second.stop_processing_tasks()
        assert calls == [{"n": 1}, {"n": 1}]

    run_async(scenario())


def test_redis_queue_subsecond_timeout_does_not_become_infinite():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake)
        out = await queue.take(["missing"], timeout=0.25)
        assert out is None
        assert fake.brpoplpush_calls == [
            ("store-tasks:wait:missing", "store-tasks:claimed", 1)
        ]

    run_async(scenario())


def test_redis_queue_remove_on_complete_deletes_record():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake, prefix="tests")
        job = await queue.add("task1", {})
        await queue.take(["task1"], timeout=0.5)
        await queue.complete(job.id)
        assert await queue.get_job(job.id) is None

    run_async(scenario())


def test_redis_queue_close_closes_client():
    async def scenario() -> None:
        fake = _FakeRedis()
        queue = RedisJobQueue(fake)
        await queue.close()
        assert queue.closed
        assert fake.closed

    run_async(scenario())


def test_create_job_queue_defaults_to_in_memory():
    assert isinstance(create_job_queue(), InMemoryJobQueue)
    assert isinstance(create_job_queue(None, prefix="ignored"), InMemoryJobQueue)


def test_create_job_queue_with_injected_client():
    injected = object()
    queue = create_job_queue(redis_client=injected, prefix="tests:queue")
    assert isinstance(queue, RedisJobQueue)
    assert queue.client is injected
    assert queue._prefix == "tests:queue"  # noqa: SLF001


def test_queue_factory_from_env(monkeypatch):
    monkeypatch.delenv("STORE_TASKS_REDIS_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("STORE_TASKS_BACKEND", raising=False)
    assert isinstance(create_job_queue_from_env(), InMemoryJobQueue)

    monkeypatch.setenv("STORE_TASKS_BACKEND", "redis")
    monkeypatch.setenv("STORE_TASKS_QUEUE_PREFIX", "env:queue")
    injected = object()
    queue = create_job_queue_from_env(redis_client=injected)
    assert isinstance(queue, RedisJobQueue)
    assert queue._prefix == "env:queue"  # noqa: SLF001

    monkeypatch.setenv("STORE_TASKS_BACKEND", "bad-backend")
    with pytest.raises(ValueError, match="Unknown STORE_TASKS_BACKEND"):
        create_job_queue_from_env()


def test_options_from_env(monkeypatch):
    monkeypatch.setenv("STORE_TASKS_REDIS_URL", "redis://example:6379/2")
    monkeypatch.setenv("STORE_TASKS_QUEUE_PREFIX", "app")
    monkeypatch.setenv("STORE_TASKS_JOB_ATTEMPTS", "5")
    monkeypatch.setenv("STORE_TASKS_JOB_TIMEOUT_S", "2.5")

    options = options_from_env(transform_context=dict)

    assert options.redis_url == "redis://example:6379/2"
    assert options.queue_options == {"prefix": "app"}
    assert options.default_job_options == {"attempts": 5, "timeout_s": 2.5}
    assert options.transform_context is dict

    with pytest.raises(TypeError, match="Unknown plugin option"):
        options_from_env(redisurl="x")


def test_plugin_options_defaults():
    options = TasksPluginOptions()
    assert options.redis_url is None
    assert options.queue is None
    assert options.default_job_options == {}


def test_prometheus_metrics_counts_with_labels():
    prometheus_client = pytest.importorskip("prometheus_client")
    registry = prometheus_client.CollectorRegistry()
    metrics = PrometheusConsumerMetrics(namespace="tests", registry=registry)

    # unlabeled counters are exported before the first increment
    assert registry.get_sample_value("tests_tasks_consumer_recovered_total") == 0.0

    metrics.incr("tasks_consumer_completed_total", tags={"name": "task1"})
    metrics.incr("tasks_consumer_completed_total", tags={"name": "task1"})
    metrics.incr("tasks_consumer_failed_total", tags={"name": "task1", "final": "true"})
    metrics.incr("tasks_consumer_dequeued_total")
    metrics.incr("tasks_consumer_recovered_total", 3)

    assert (
        registry.get_sample_value("tests_tasks_consumer_completed_total", {"name": "task1"})
        == 2.0
    )
    assert (
        registry.get_sample_value(
            "tests_tasks_consumer_failed_total", {"name": "task1", "final": "true"}
        )
        == 1.0
    )
    assert registry.get_sample_value("tests_tasks_consumer_dequeued_total", {"name": ""}) == 1.0
    assert registry.get_sample_value("tests_tasks_consumer_recovered_total") == 3.0

    with pytest.raises(ValueError, match="Unknown consumer metric"):
        metrics.incr("tasks_consumer_retried_total")


def test_consumer_feeds_prometheus_counters(worker_store, recorder_factory):
    prometheus_client = pytest.importorskip("prometheus_client")
    registry = prometheus_client.CollectorRegistry()

    async def scenario() -> None:
        worker_store.define("ok", recorder_factory())
        worker_store.define("bad", recorder_factory(error=RuntimeError("boom")))
        worker = install(
            worker_store,
            TasksPluginOptions(
                queue=InMemoryJobQueue(),
                consumer_config=ConsumerConfig(poll_interval_s=0.05, shutdown_timeout_s=1.0),
                metrics=PrometheusConsumerMetrics(namespace="tests", registry=registry),
            ),
        )
        settled = asyncio.Event()
        outcomes = []

        def record(job, detail):
            outcomes.append(job.name)
            if len(outcomes) == 2:
                settled.set()

        worker.task_queue.on("completed", record)
        worker.task_queue.on("failed", record)
        await worker.create_task("ok")
        await worker.create_task("bad", job_options={"attempts": 1})
        await worker.process_tasks("*")
        await asyncio.wait_for(settled.wait(), timeout=2.0)
        await worker.stop_processing_tasks()

    run_async(scenario())

    sample = registry.get_sample_value
    assert sample("tests_tasks_consumer_dequeued_total", {"name": "ok"}) == 1.0
    assert sample("tests_tasks_consumer_dequeued_total", {"name": "bad"}) == 1.0
    assert sample("tests_tasks_consumer_completed_total", {"name": "ok"}) == 1.0
    assert sample("tests_tasks_consumer_failed_total", {"name": "bad", "final": "true"}) == 1.0
