import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx
from loguru import logger

from pixiv_crawler.exceptions import ConfigurationError
from pixiv_crawler.monitoring.metrics_server import DISPATCH_RESULTS, UNCOMPLETED_TASKS
from pixiv_crawler.storage.models import TaskFlag
from pixiv_crawler.storage.task_state_manager import TaskStateManager
from pixiv_crawler.utils.config_loader import Config


EXPAND_ACTION = "expand"
TICK_SECONDS = 1.0


class JobName(str, Enum):
    DETAIL_INFO = "detail-info"
    RECOMMEND_TASKS = "recommend-tasks"
    HOME_RECOMMEND = "home-recommend"
    DAILY_RANKING = "daily-ranking"
    WEEKLY_RANKING = "weekly-ranking"
    MONTHLY_RANKING = "monthly-ranking"


RANKING_JOBS = {
    JobName.DAILY_RANKING: "daily",
    JobName.WEEKLY_RANKING: "weekly",
    JobName.MONTHLY_RANKING: "monthly",
}


@dataclass
class DispatchSummary:
    action: str
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed


class Orchestrator:
    """
    Fans task work out to the worker nodes.

    Each job is one trigger's worth of work: it reads what is still pending
    from the task table, sends one request per pid round-robin over the
    worker endpoints and waits for every call to settle. Nothing is retried
    within a trigger; whatever failed is still pending at the next one.
    """

    def __init__(
        self,
        config: Config,
        tasks: TaskStateManager,
        *,
        client: Optional[httpx.AsyncClient] = None,
        log=logger,
        stop_event: Optional[asyncio.Event] = None,
    ):
        if not config.worker_endpoints:
            raise ConfigurationError("At least one worker endpoint is required")

        self.config = config
        self.tasks = tasks
        self.workers = [endpoint.rstrip("/") for endpoint in config.worker_endpoints]
        self.primary = (config.primary or self.workers[0]).rstrip("/")
        self.client = client
        self._owns_client = client is None
        self.log = log
        self.stop_event = stop_event

    async def __aenter__(self) -> "Orchestrator":
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout=self.config.dispatch_timeout)
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None

    def _stopped(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    # --------------------------
    #  Dispatch
    # --------------------------
    async def _call(
        self, endpoint: str, action: str, payload: Dict[str, Any]
    ) -> httpx.Response:
        if self.client is None:
            raise RuntimeError("HTTP client is not initialized")

        if action == EXPAND_ACTION:
            resp = await self.client.post(f"{endpoint}/", json=payload)
        else:
            resp = await self.client.get(f"{endpoint}/", params={"action": action, **payload})
        resp.raise_for_status()
        return resp

    async def dispatch(self, action: str, payloads: Sequence[Dict[str, Any]]) -> DispatchSummary:
        """Send payload ``i`` to worker ``i mod M``; every call runs to completion."""
        summary = DispatchSummary(action=action)
        if not payloads:
            return summary

        endpoints = [self.workers[i % len(self.workers)] for i in range(len(payloads))]
        results = await asyncio.gather(
            *(self._call(endpoint, action, payload) for endpoint, payload in zip(endpoints, payloads)),
            return_exceptions=True,
        )

        for endpoint, payload, result in zip(endpoints, payloads, results):
            if isinstance(result, BaseException):
                summary.failed += 1
                summary.errors.append(f"{endpoint}: {result}")
                DISPATCH_RESULTS.labels(action=action, outcome="failed").inc()
                self.log.warning(f"Dispatch {action} {payload} to {endpoint} failed: {result}")
            else:
                summary.succeeded += 1
                DISPATCH_RESULTS.labels(action=action, outcome="succeeded").inc()

        self.log.info(
            f"Dispatched {action}: {summary.succeeded} succeeded, {summary.failed} failed"
        )
        return summary

    async def _call_primary(self, action: str) -> Optional[httpx.Response]:
        try:
            resp = await self._call(self.primary, action, {})
        except (httpx.HTTPError, RuntimeError) as exc:
            DISPATCH_RESULTS.labels(action=action, outcome="failed").inc()
            self.log.warning(f"Primary {self.primary} did not accept {action}: {exc}")
            return None

        DISPATCH_RESULTS.labels(action=action, outcome="succeeded").inc()
        return resp

    async def _refresh_gauge(self, flag: TaskFlag) -> None:
        UNCOMPLETED_TASKS.labels(flag=flag.value).set(await self.tasks.count_uncompleted(flag))

    # --------------------------
    #  Jobs
    # --------------------------
    async def run_ranking(self, mode: str) -> DispatchSummary:
        resp = await self._call_primary(mode)
        summary = DispatchSummary(action=mode)
        if resp is None:
            summary.failed = 1
        else:
            summary.succeeded = 1
            self.log.info(f"{mode} ranking crawl triggered on {self.primary}")
        return summary

    async def run_recommend_tasks(self) -> List[DispatchSummary]:
        summaries = []
        for flag in (TaskFlag.ILLUST_RECOMMEND, TaskFlag.AUTHOR_RECOMMEND):
            if self._stopped():
                break
            pids = await self.tasks.list_uncompleted(
                flag,
                len(self.workers),
                min_popularity=self.config.min_task_popularity,
            )
            await self._refresh_gauge(flag)
            summaries.append(await self.dispatch(flag.action, [{"pid": pid} for pid in pids]))
        return summaries

    async def run_detail_info(self) -> List[DispatchSummary]:
        rounds = max(1, self.config.detail_info_rounds)
        per_round = len(self.workers)
        pids = await self.tasks.list_uncompleted(TaskFlag.DETAIL_INFO, per_round * rounds)
        await self._refresh_gauge(TaskFlag.DETAIL_INFO)

        summaries = []
        for index in range(rounds):
            batch = pids[index * per_round : (index + 1) * per_round]
            if not batch or self._stopped():
                break
            if index > 0:
                await asyncio.sleep(self.config.detail_info_round_delay)
            summaries.append(
                await self.dispatch(TaskFlag.DETAIL_INFO.action, [{"pid": pid} for pid in batch])
            )
        return summaries

    async def run_home_recommend(self) -> DispatchSummary:
        pids: List[str] = []
        resp = await self._call_primary("home")
        if resp is not None:
            try:
                pids = [str(pid) for pid in resp.json().get("pids") or []]
            except (ValueError, AttributeError) as exc:
                self.log.warning(f"Unreadable homepage response from {self.primary}: {exc}")

        if not pids:
            self.log.info("No homepage recommendations, sampling known artworks instead")
            pids = await self.tasks.sample_known_pids(self.config.home_sample_size)
        elif len(pids) > self.config.home_sample_size:
            pids = random.sample(pids, self.config.home_sample_size)

        payloads = [
            {
                "pid": pid,
                "targetNum": self.config.home_target_num,
                "popularityThreshold": self.config.popularity_threshold,
            }
            for pid in pids
        ]
        return await self.dispatch(EXPAND_ACTION, payloads)

    async def run_job(self, job) -> Any:
        job = JobName(job)
        self.log.info(f"Running job {job.value}")
        if job in RANKING_JOBS:
            return await self.run_ranking(RANKING_JOBS[job])
        if job is JobName.RECOMMEND_TASKS:
            return await self.run_recommend_tasks()
        if job is JobName.DETAIL_INFO:
            return await self.run_detail_info()
        return await self.run_home_recommend()

    # --------------------------
    #  Triggers
    # --------------------------
    async def _run_safely(self, job: JobName) -> Any:
        try:
            return await self.run_job(job)
        except Exception as exc:
            self.log.error(f"Job {job.value} failed: {exc}")
            return None

    async def handle_cron(self, expression: str) -> Any:
        """Run the job mapped to a cron expression. Never raises."""
        name = self.config.cron_jobs.get(expression.strip())
        if name is None:
            self.log.warning(f"No job configured for cron expression '{expression}'")
            return None
        try:
            job = JobName(name)
        except ValueError:
            self.log.error(f"Cron expression '{expression}' maps to unknown job '{name}'")
            return None
        return await self._run_safely(job)

    async def run_forever(self) -> None:
        try:
            intervals = {JobName(name): seconds for name, seconds in self.config.job_intervals.items()}
        except ValueError as exc:
            raise ConfigurationError(f"Unknown job in job_intervals: {exc}") from exc

        loop = asyncio.get_running_loop()
        next_due = {job: 0.0 for job in intervals}
        self.log.info("Orchestrator started...")

        while not self._stopped():
            for job, due in next_due.items():
                if self._stopped():
                    break
                if loop.time() >= due:
                    await self._run_safely(job)
                    next_due[job] = loop.time() + intervals[job]
            await self._wait(TICK_SECONDS)

        self.log.info("Orchestrator stopped")

    async def _wait(self, seconds: float) -> None:
        if self.stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
