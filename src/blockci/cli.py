# cli.py
from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path

import click

from blockci import settings
from blockci.agents import make_provisioner
from blockci.cache import make_cache
from blockci.config import load_pipeline
from blockci.coordinator import Coordinator
from blockci.errors import CacheError, ConfigError
from blockci.executor import Executor
from blockci.resolver import resolve
from blockci.scheduler import Scheduler
from blockci.services import DockerServiceBackend
from blockci.ui.console import Console, ConsoleEvents, get_console, set_console
from blockci.vcs import GitCheckout, WorkspaceCheckout, describe_source

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _load_plan(config_path: Path, job_timeout: float | None):
    """Parse + resolve, turning ConfigError into exit code 2."""
    console = get_console()
    try:
        pipeline = load_pipeline(config_path)
        plan = resolve(pipeline, default_timeout=job_timeout)
    except ConfigError as e:
        console.print_error(
            "Invalid configuration",
            f"{config_path}: {e.reason}",
            details=[f"at {e.location}"],
        )
        sys.exit(EXIT_CONFIG)
    return pipeline, plan


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """blockci: runs block/job pipeline documents."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("config_path", type=click.Path(path_type=Path))
@click.option("--agent-backend", type=click.Choice(["local", "docker"]), default=settings.AGENT_BACKEND,
              show_default=True, help="Where jobs run")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="File cache directory")
@click.option("--redis-url", default=settings.REDIS_URL, help="Use a Redis cache instead of the file cache")
@click.option("--log-dir", default=settings.LOG_DIR, show_default=True, help="Where job logs are written")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Root for agent workdirs")
@click.option("--job-timeout", type=float, default=None,
              help="Default job time limit in seconds (when the config sets none)")
@click.option("--repo", default=None, help="Git URL to check out into each agent (defaults to a copy of the config's directory)")
@click.option("--ref", default="HEAD", show_default=True, help="Git ref used with --repo")
@click.option("--stream-logs/--no-stream-logs", default=False, help="Echo job output as it arrives")
@click.option("--report", type=click.Path(path_type=Path), default=None, help="Write the pipeline result as JSON")
@click.pass_context
def run(ctx, config_path, agent_backend, cache_dir, redis_url, log_dir, work_dir,
        job_timeout, repo, ref, stream_logs, report):
    """Run the pipeline in CONFIG_PATH."""
    console = get_console()
    console.stream_logs = stream_logs

    pipeline, plan = _load_plan(config_path, job_timeout)
    console.print_debug(
        f"backend={agent_backend} work_dir={work_dir} log_dir={log_dir} "
        f"cache={redis_url or cache_dir}"
    )

    try:
        checkout = GitCheckout(repo, ref) if repo else WorkspaceCheckout(config_path.resolve().parent)
        executor = Executor(
            make_provisioner(agent_backend, work_dir),
            coordinator=Coordinator(make_cache(cache_dir, redis_url), DockerServiceBackend()),
            checkout=checkout,
            log_dir=log_dir,
            default_timeout=job_timeout,
            pipeline_name=pipeline.name,
        )
        executor.add_log_listener(console.print_log_line)
        scheduler = Scheduler(executor, ConsoleEvents(console))

        console.print_run_started(
            repository=describe_source(config_path.resolve().parent),
            config=config_path.name,
            block_count=len(plan.blocks),
            job_count=sum(len(b.jobs) for b in plan.blocks),
        )

        def _interrupt(signum, frame):
            console.print_info("\nInterrupted, cancelling running jobs...")
            scheduler.cancel()

        previous = signal.signal(signal.SIGINT, _interrupt)
        try:
            result = scheduler.run(plan)
        finally:
            signal.signal(signal.SIGINT, previous)

        console.print_results(result)

        if report is not None:
            report.parent.mkdir(parents=True, exist_ok=True)
            report.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
            console.print_info(f"Report written to {report}")

    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if result.cancelled:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_OK if result.success else EXIT_FAILED)


@cli.command()
@click.argument("config_path", type=click.Path(path_type=Path))
def validate(config_path):
    """Parse and resolve CONFIG_PATH without running anything."""
    console = get_console()
    pipeline, plan = _load_plan(config_path, None)
    console.print_plan(pipeline.name, plan.describe())
    console.print_info(f"\n{config_path}: valid ({len(plan.blocks)} block(s))")


@cli.group()
def cache():
    """Inspect the dependency cache."""


@cache.command("list")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True)
@click.option("--redis-url", default=settings.REDIS_URL)
def cache_list(cache_dir, redis_url):
    """List cached keys."""
    console = get_console()
    try:
        entries = make_cache(cache_dir, redis_url).entries()
    except CacheError as e:
        console.print_error("Cache unavailable", str(e))
        sys.exit(EXIT_FAILED)
    if not entries:
        console.print_info("cache is empty")
    for entry in entries:
        console.print_info(f"{entry.key}  {entry.size} bytes")


@cache.command("prune")
@click.option("--keep", default=10, show_default=True, type=int, help="Number of newest entries to keep")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True)
@click.option("--redis-url", default=settings.REDIS_URL)
def cache_prune(keep, cache_dir, redis_url):
    """Drop all but the newest cache entries."""
    console = get_console()
    try:
        removed = make_cache(cache_dir, redis_url).prune(keep)
    except CacheError as e:
        console.print_error("Cache unavailable", str(e))
        sys.exit(EXIT_FAILED)
    console.print_info(f"removed {len(removed)} entr{'y' if len(removed) == 1 else 'ies'}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
