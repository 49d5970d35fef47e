"""Command line entry points for worker nodes and the orchestrator."""

import asyncio
from typing import Optional

import click

from pixiv_crawler.main import main as serve_node
from pixiv_crawler.main import run_cron, run_job, run_scheduler, worker_session
from pixiv_crawler.pixiv_client import RankingMode
from pixiv_crawler.scheduler import JobName
from pixiv_crawler.utils.config_loader import load_config
from pixiv_crawler.utils.logger import setup_logger


@click.group()
def cli() -> None:
    """Pixiv recommendation-graph crawler.

    \b
      pixiv-crawler serve            Run a worker node with its HTTP API
      pixiv-crawler crawl PID        Expand one seed in the foreground
      pixiv-crawler ranking daily    Crawl and store one ranking list
      pixiv-crawler job NAME         Run one orchestrator job once
      pixiv-crawler cron "EXPR"      Run the job mapped to a cron expression
      pixiv-crawler schedule         Run the orchestrator loop in process
    """


@cli.command()
def serve() -> None:
    """Run a worker node until SIGINT/SIGTERM."""
    asyncio.run(serve_node())


@cli.command()
@click.argument("pid")
@click.option("--target-num", type=int, default=None, help="Frontier size to reach.")
@click.option("--threshold", type=float, default=None, help="Minimum popularity to store.")
def crawl(pid: str, target_num: Optional[int], threshold: Optional[float]) -> None:
    """Expand from PID and store every artwork that clears the threshold."""

    async def run():
        config = load_config()
        setup_logger(config.log_level, config.log_path, config.node_id)
        async with worker_session(config) as worker:
            return await worker.expand_from_seed(pid, target_num, threshold)

    summary = asyncio.run(run())
    click.echo(
        f"{summary.persisted} stored, {summary.duplicates} duplicates, "
        f"{summary.failed} failed out of {summary.candidates} candidates "
        f"in {summary.elapsed:.1f}s"
    )


@cli.command()
@click.argument("mode", type=click.Choice([m.value for m in RankingMode]))
def ranking(mode: str) -> None:
    """Crawl one ranking list and store its entries."""

    async def run():
        config = load_config()
        setup_logger(config.log_level, config.log_path, config.node_id)
        async with worker_session(config) as worker:
            return await worker.crawl_ranking(mode)

    entries = asyncio.run(run())
    click.echo(f"{len(entries)} {mode} ranking entries stored")


@cli.command()
@click.argument("name", type=click.Choice([j.value for j in JobName]))
def job(name: str) -> None:
    """Run one orchestrator job once."""
    asyncio.run(run_job(name))


@cli.command()
@click.argument("expression")
def cron(expression: str) -> None:
    """Run the job configured for a cron EXPRESSION; job failures are only logged."""
    asyncio.run(run_cron(expression))


@cli.command()
def schedule() -> None:
    """Fire jobs at their configured intervals until interrupted."""
    asyncio.run(run_scheduler())


if __name__ == "__main__":
    cli()
