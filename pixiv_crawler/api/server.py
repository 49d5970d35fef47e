import asyncio
import time
from functools import partial
from typing import Any, Awaitable, Dict, Optional, Set

from aiohttp import web
from loguru import logger

from pixiv_crawler.exceptions import PersistenceError
from pixiv_crawler.monitoring.metrics_server import metrics_handler
from pixiv_crawler.pixiv_client import RankingMode
from pixiv_crawler.storage.models import TaskFlag
from pixiv_crawler.utils.logger import TaskLogBuffer, task_log_buffer
from pixiv_crawler.worker import Worker


WORKER = web.AppKey("worker", Worker)
LOG_BUFFER = web.AppKey("log_buffer", TaskLogBuffer)
BACKGROUND_TASKS = web.AppKey("background_tasks", Set[asyncio.Task])

MAX_RANDOM_PIDS = 100


class BadRequest(Exception):
    pass


def _millis() -> int:
    return int(time.time() * 1000)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _int_param(value: Any, name: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be an integer")


def _float_param(value: Any, name: str, default: Optional[float] = None) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be a number")


def _require_pid(request: web.Request) -> str:
    pid = request.query.get("pid", "").strip()
    if not pid:
        raise BadRequest("pid is required")
    return pid


def _spawn(app: web.Application, coro: Awaitable, task_id: str) -> None:
    async def guarded():
        try:
            await coro
        except Exception as exc:
            logger.bind(task_id=task_id).error(f"Background task failed: {exc}")

    task = asyncio.create_task(guarded())
    app[BACKGROUND_TASKS].add(task)
    task.add_done_callback(app[BACKGROUND_TASKS].discard)


# --------------------------
#  POST / : seed expansion
# --------------------------
async def handle_expand(request: web.Request) -> web.Response:
    worker = request.app[WORKER]
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "request body must be JSON")
    if not isinstance(body, dict):
        return _error(400, "request body must be a JSON object")

    try:
        target_num = _int_param(body.get("targetNum"), "targetNum")
        threshold = _float_param(body.get("popularityThreshold"), "popularityThreshold")
    except BadRequest as exc:
        return _error(400, str(exc))

    pids = body.get("pids")
    pid = body.get("pid")
    if isinstance(pids, list) and pids:
        task_id = f"batch_{_millis()}"
        coro = worker.expand_from_seeds(
            [str(p) for p in pids], target_num, threshold, task_id=task_id
        )
        message = f"Crawl of {len(pids)} seeds started"
    elif pid:
        task_id = f"single_{pid}_{_millis()}"
        coro = worker.expand_from_seed(str(pid), target_num, threshold, task_id=task_id)
        message = f"Crawl from {pid} started"
    else:
        return _error(400, "pid or pids is required")

    _spawn(request.app, coro, task_id)
    return web.json_response({"message": message, "taskId": task_id})


# --------------------------
#  GET / ?action=...
# --------------------------
async def _illust_recommend(request: web.Request) -> Dict[str, Any]:
    pid = _require_pid(request)
    target_num = _int_param(request.query.get("targetNum"), "targetNum")
    pids = await request.app[WORKER].get_illust_recommend_pids(pid, target_num)
    return {"pid": pid, "pids": pids, "count": len(pids)}


async def _author_recommend(request: web.Request) -> Dict[str, Any]:
    pid = _require_pid(request)
    target_num = _int_param(request.query.get("targetNum"), "targetNum")
    pids = await request.app[WORKER].get_author_recommend_pids(pid, target_num)
    return {"pid": pid, "pids": pids, "count": len(pids)}


async def _detail_info(request: web.Request) -> Dict[str, Any]:
    pid = _require_pid(request)
    success = await request.app[WORKER].get_pid_detail_info(pid)
    return {"pid": pid, "success": success}


async def _ranking(request: web.Request, mode: RankingMode) -> Dict[str, Any]:
    task_id = f"{mode.value}_{time.strftime('%Y-%m-%d')}_{_millis()}"
    _spawn(request.app, request.app[WORKER].crawl_ranking(mode, task_id=task_id), task_id)
    return {"message": f"{mode.value} ranking crawl started", "taskId": task_id}


async def _home(request: web.Request) -> Dict[str, Any]:
    pids = await request.app[WORKER].get_home_recommended_pids()
    return {"pids": pids, "count": len(pids)}


async def _random_pids(request: web.Request) -> Dict[str, Any]:
    count = _int_param(request.query.get("count"), "count", default=10)
    if not 1 <= count <= MAX_RANDOM_PIDS:
        raise BadRequest(f"count must be between 1 and {MAX_RANDOM_PIDS}")
    pids = await request.app[WORKER].tasks.sample_known_pids(count)
    return {"pids": pids, "count": len(pids)}


async def _get_pic(request: web.Request):
    pid = _require_pid(request)
    pic = await request.app[WORKER].artworks.get_artwork(pid)
    if pic is None:
        return _error(404, f"artwork {pid} not found")
    return {
        "pid": pic.pid,
        "captured_at": pic.captured_at.isoformat() if pic.captured_at else None,
        "tags": pic.tags,
        "like_count": pic.like_count,
        "bookmark_count": pic.bookmark_count,
        "view_count": pic.view_count,
        "popularity": pic.popularity,
        "image_path": pic.image_path,
        "image_url": pic.image_url,
        "file_size": pic.file_size,
    }


async def _stats(request: web.Request) -> Dict[str, Any]:
    worker = request.app[WORKER]
    stats = await worker.artworks.stats()
    stats["uncompleted"] = {
        flag.value: await worker.tasks.count_uncompleted(flag) for flag in TaskFlag
    }
    return stats


async def _logs(request: web.Request) -> Dict[str, Any]:
    task_id = request.query.get("taskId") or None
    limit = _int_param(request.query.get("limit"), "limit", default=100)
    records = request.app[LOG_BUFFER].query(task_id=task_id, limit=limit)
    return {"taskId": task_id, "logs": records, "count": len(records)}


async def _status(request: web.Request) -> Dict[str, Any]:
    return {"status": "ok", "node": request.app[WORKER].config.node_id}


ACTIONS = {
    TaskFlag.ILLUST_RECOMMEND.action: _illust_recommend,
    TaskFlag.AUTHOR_RECOMMEND.action: _author_recommend,
    TaskFlag.DETAIL_INFO.action: _detail_info,
    "home": _home,
    "random-pids": _random_pids,
    "get-pic": _get_pic,
    "stats": _stats,
    "logs": _logs,
    "status": _status,
}


async def handle_action(request: web.Request) -> web.Response:
    action = request.query.get("action", "status")

    try:
        mode = RankingMode(action)
    except ValueError:
        handler = ACTIONS.get(action)
    else:
        handler = partial(_ranking, mode=mode)
    if handler is None:
        return _error(400, f"unknown action '{action}'")

    try:
        result = await handler(request)
    except BadRequest as exc:
        return _error(400, str(exc))
    except PersistenceError as exc:
        logger.error(f"Action {action} failed to persist: {exc}")
        return _error(500, str(exc))

    if isinstance(result, web.Response):
        return result
    return web.json_response(result)


async def _cancel_background(app: web.Application) -> None:
    tasks = list(app[BACKGROUND_TASKS])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def create_app(worker: Worker, *, log_buffer: TaskLogBuffer = task_log_buffer) -> web.Application:
    app = web.Application()
    app[WORKER] = worker
    app[LOG_BUFFER] = log_buffer
    app[BACKGROUND_TASKS] = set()

    app.router.add_get("/", handle_action)
    app.router.add_post("/", handle_expand)
    app.router.add_get("/metrics", metrics_handler)
    app.on_cleanup.append(_cancel_background)
    return app


async def start_api_server(app: web.Application, host: str = "0.0.0.0", port: int = 8080):
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    return runner, site
