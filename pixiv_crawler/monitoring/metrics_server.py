from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    generate_latest,
    Counter,
    Gauge,
    Histogram,
)

# -------------------------
# Remote endpoint metrics
# -------------------------

REMOTE_REQUESTS = Counter(
    "pixiv_remote_requests_total",
    "Requests issued to the artwork metadata service",
    ["endpoint"],
)

REMOTE_FAILURES = Counter(
    "pixiv_remote_failures_total",
    "Remote requests that produced no usable data",
    ["endpoint", "category"],
)

REQUEST_LATENCY = Histogram(
    "pixiv_request_latency_seconds",
    "Time to complete one remote request",
    ["endpoint"],
)

CREDENTIAL_ROTATIONS = Counter(
    "pixiv_credential_rotations_total",
    "Times the active credential profile was advanced",
)

# -------------------------
# Crawl metrics
# -------------------------

FRONTIER_SIZE = Histogram(
    "pixiv_frontier_size",
    "Artwork ids produced by one seed expansion",
    buckets=(1, 10, 50, 100, 250, 500, 1000, 2500),
)

ARTWORKS_PERSISTED = Counter(
    "pixiv_artworks_persisted_total",
    "Artwork records written because they met the popularity threshold",
)

DUPLICATE_ARTWORKS = Counter(
    "pixiv_duplicate_artworks_total",
    "Artwork inserts skipped because the pid already exists",
)

PERSIST_FAILURES = Counter(
    "pixiv_persist_failures_total",
    "Artwork writes that failed",
)

# -------------------------
# Orchestrator metrics
# -------------------------

DISPATCH_RESULTS = Counter(
    "pixiv_dispatch_results_total",
    "Worker dispatch outcomes",
    ["action", "outcome"],
)

UNCOMPLETED_TASKS = Gauge(
    "pixiv_uncompleted_tasks",
    "Task rows whose flag is still false",
    ["flag"],
)


# -------------------------
# /metrics endpoint
# -------------------------

async def metrics_handler(request):
    data = generate_latest()

    # Content type must not carry a charset parameter.
    ctype = CONTENT_TYPE_LATEST.split(";")[0]

    return web.Response(
        body=data,
        content_type=ctype
    )


async def start_metrics_server(port=8000):
    app = web.Application()
    app.router.add_get("/metrics", metrics_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()

    return runner, site
