"""CLI entrypoint for upload-optimizer."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click
import uvicorn

from . import __version__
from .configuration import ENV_PREFIX, load_settings, load_task_config
from .errors import ConfigurationError
from .main import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _env(name: str) -> str:
    return f"{ENV_PREFIX}{name.upper()}"


@click.command()
@click.version_option(version=__version__, prog_name="upload-optimizer")
@click.option("--upstream", envvar=_env("upstream"), help="Upstream URL. Example: http://immich-server:2283")
@click.option("--host", envvar=_env("host"), help="Listening host.")
@click.option("--port", envvar=_env("port"), type=int, help="Listening port.")
@click.option(
    "--tasks-file",
    envvar=_env("tasks_file"),
    type=click.Path(path_type=Path, dir_okay=False),
    help="YAML task list. Commands run with the file's directory as working directory.",
)
@click.option("--filter-path", envvar=_env("filter_path"), help="Only intercept uploads to paths matching this glob.")
@click.option("--filter-form-key", envvar=_env("filter_form_key"), help="Form field carrying the uploaded file.")
@click.option("--max-concurrent-tasks", envvar=_env("max_concurrent_tasks"), type=int, help="Cap on simultaneously running commands.")
@click.option("--watch-dir", envvar=_env("watch_dir"), type=click.Path(path_type=Path, file_okay=False), help="Directory to watch for files to upload.")
@click.option("--undone-dir", envvar=_env("undone_dir"), type=click.Path(path_type=Path, file_okay=False), help="Where files that failed to upload are copied.")
@click.option("--api-key", envvar=_env("api_key"), help="API key used to upload watched files.")
@click.option("--log-level", envvar=_env("log_level"), help="Logging level.")
def main(
    upstream: Optional[str],
    host: Optional[str],
    port: Optional[int],
    tasks_file: Optional[Path],
    filter_path: Optional[str],
    filter_form_key: Optional[str],
    max_concurrent_tasks: Optional[int],
    watch_dir: Optional[Path],
    undone_dir: Optional[Path],
    api_key: Optional[str],
    log_level: Optional[str],
) -> None:
    """Proxy that optimizes uploaded photos and videos before they reach the server."""
    try:
        settings = load_settings(
            {
                "upstream": upstream,
                "host": host,
                "port": port,
                "tasks_file": tasks_file,
                "filter_path": filter_path,
                "filter_form_key": filter_form_key,
                "max_concurrent_tasks": max_concurrent_tasks,
                "watch_dir": watch_dir,
                "undone_dir": undone_dir,
                "api_key": api_key,
                "log_level": log_level,
            }
        )
        tasks = load_task_config(settings.tasks_file)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    logging.getLogger(__name__).info(f"loaded {len(tasks)} tasks from {settings.tasks_file}")

    app = create_app(settings, tasks)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
