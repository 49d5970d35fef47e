import asyncio
import json

import httpx
import pytest

from pixiv_crawler.exceptions import ConfigurationError
from pixiv_crawler.scheduler import EXPAND_ACTION, JobName, Orchestrator
from pixiv_crawler.storage.models import TaskFlag
from pixiv_crawler.utils.config_loader import Config


pytestmark = pytest.mark.anyio


class FakeTasks:
    def __init__(self, pending=None, known=None):
        self.pending = pending or {}
        self.known = known or []
        self.list_calls = []

    async def list_uncompleted(self, flag, limit, *, min_popularity=None):
        flag = TaskFlag(flag)
        self.list_calls.append((flag, limit, min_popularity))
        return self.pending.get(flag, [])[:limit]

    async def count_uncompleted(self, flag):
        return len(self.pending.get(TaskFlag(flag), []))

    async def sample_known_pids(self, count):
        return self.known[:count]


class Recorder:
    """Mock transport that records calls and fails for the given hosts."""

    def __init__(self, failing_hosts=(), home_pids=None, on_request=None):
        self.failing_hosts = set(failing_hosts)
        self.home_pids = home_pids or []
        self.on_request = on_request
        self.calls = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, request.url.host, dict(request.url.params), body))
        if self.on_request is not None:
            self.on_request(request)
        if request.url.host in self.failing_hosts:
            return httpx.Response(500, json={"error": "boom"})
        if request.url.params.get("action") == "home":
            return httpx.Response(200, json={"pids": self.home_pids})
        return httpx.Response(200, json={"ok": True})


def make_orchestrator(recorder, tasks=None, workers=3, stop_event=None, **overrides):
    config = Config(
        worker_endpoints=[f"http://w{i}.test/" for i in range(workers)],
        detail_info_round_delay=0,
        **overrides,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return Orchestrator(config, tasks or FakeTasks(), client=client, stop_event=stop_event)


def test_requires_worker_endpoints():
    with pytest.raises(ConfigurationError):
        Orchestrator(Config(), FakeTasks())


async def test_dispatch_is_round_robin_and_survives_failures():
    recorder = Recorder(failing_hosts={"w1.test"})
    orchestrator = make_orchestrator(recorder)

    summary = await orchestrator.dispatch(
        "pid-detail-info", [{"pid": str(i)} for i in range(7)]
    )

    assert summary.total == 7
    assert summary.failed == 2
    assert summary.succeeded == 5
    by_pid = {params["pid"]: host for _, host, params, _ in recorder.calls}
    assert by_pid == {str(i): f"w{i % 3}.test" for i in range(7)}
    assert all(params["action"] == "pid-detail-info" for _, _, params, _ in recorder.calls)


async def test_dispatch_tolerates_transport_errors():
    async def handler(request):
        if request.url.host == "w0.test":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200)

    orchestrator = make_orchestrator(handler, workers=2)

    summary = await orchestrator.dispatch("illust-recommend-pids", [{"pid": "1"}, {"pid": "2"}])

    assert (summary.succeeded, summary.failed) == (1, 1)
    assert "w0.test" in summary.errors[0]


async def test_recommend_job_dispatches_one_pid_per_worker():
    tasks = FakeTasks(
        pending={
            TaskFlag.ILLUST_RECOMMEND: ["1", "2", "3", "4"],
            TaskFlag.AUTHOR_RECOMMEND: ["5"],
        }
    )
    recorder = Recorder()
    orchestrator = make_orchestrator(recorder, tasks, min_task_popularity=0.2)

    summaries = await orchestrator.run_job(JobName.RECOMMEND_TASKS)

    assert [s.action for s in summaries] == ["illust-recommend-pids", "author-recommend-pids"]
    assert [s.succeeded for s in summaries] == [3, 1]
    assert tasks.list_calls == [
        (TaskFlag.ILLUST_RECOMMEND, 3, 0.2),
        (TaskFlag.AUTHOR_RECOMMEND, 3, 0.2),
    ]


async def test_detail_job_runs_in_rounds():
    tasks = FakeTasks(pending={TaskFlag.DETAIL_INFO: [str(i) for i in range(10)]})
    recorder = Recorder()
    orchestrator = make_orchestrator(recorder, tasks, workers=2, detail_info_rounds=3)

    summaries = await orchestrator.run_detail_info()

    assert [s.total for s in summaries] == [2, 2, 2]
    assert tasks.list_calls[0][1] == 6
    assert sorted(params["pid"] for _, _, params, _ in recorder.calls) == [str(i) for i in range(6)]


async def test_ranking_job_calls_primary():
    recorder = Recorder()
    orchestrator = make_orchestrator(recorder, primary_endpoint="http://main.test")

    summary = await orchestrator.run_job("weekly-ranking")

    assert summary.succeeded == 1
    assert recorder.calls == [("GET", "main.test", {"action": "weekly"}, None)]


async def test_home_job_expands_homepage_pids():
    recorder = Recorder(home_pids=["11", "12"])
    orchestrator = make_orchestrator(recorder, workers=2, home_target_num=50)

    summary = await orchestrator.run_home_recommend()

    assert summary.action == EXPAND_ACTION
    assert summary.succeeded == 2
    posts = [call for call in recorder.calls if call[0] == "POST"]
    assert sorted(body["pid"] for *_, body in posts) == ["11", "12"]
    assert all(body["targetNum"] == 50 for *_, body in posts)
    assert all(body["popularityThreshold"] == 0.22 for *_, body in posts)


async def test_home_job_falls_back_to_known_pids():
    tasks = FakeTasks(known=["21", "22", "23"])
    recorder = Recorder(home_pids=[])
    orchestrator = make_orchestrator(recorder, tasks, home_sample_size=2)

    summary = await orchestrator.run_home_recommend()

    posts = [body["pid"] for method, _, _, body in recorder.calls if method == "POST"]
    assert sorted(posts) == ["21", "22"]
    assert summary.succeeded == 2


async def test_handle_cron_never_raises():
    class BrokenTasks(FakeTasks):
        async def list_uncompleted(self, *args, **kwargs):
            raise RuntimeError("store unreachable")

    orchestrator = make_orchestrator(Recorder(), BrokenTasks())

    assert await orchestrator.handle_cron("*/5 * * * *") is None
    assert await orchestrator.handle_cron("7 7 7 7 7") is None


async def test_handle_cron_runs_mapped_job():
    recorder = Recorder()
    orchestrator = make_orchestrator(recorder)

    summary = await orchestrator.handle_cron("0 1 * * *")

    assert summary.succeeded == 1
    assert recorder.calls[0][2] == {"action": "daily"}


async def test_run_forever_stops_on_event():
    stop = asyncio.Event()
    recorder = Recorder(on_request=lambda request: stop.set())
    orchestrator = make_orchestrator(
        recorder, stop_event=stop, job_intervals={"daily-ranking": 3600}
    )

    await asyncio.wait_for(orchestrator.run_forever(), timeout=5)

    assert len(recorder.calls) == 1
