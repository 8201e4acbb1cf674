"""mcpkit command line.

- ``mcpkit init <name>`` scaffolds a stdio server project
- ``mcpkit dev`` runs the project's server and restarts it when a ``.py`` file changes
- ``mcpkit build`` packs the project into ``build/<project>.pyz``
"""

import logging
import shutil
import subprocess
import sys
import tempfile
import time
import tomllib
import zipapp
from pathlib import Path

import click

from mcpkit.utilities.logging import configure_logging

logger = logging.getLogger(__name__)

SERVER_TEMPLATE = '''\
"""{name} MCP server."""

from typing import Any

import anyio

import mcpkit.types as types
from mcpkit.server.lowlevel import Server
from mcpkit.server.settings import Settings
from mcpkit.server.stdio import stdio_server
from mcpkit.shared.exceptions import McpError

settings = Settings()
server = Server("{name}", version="0.1.0", session_ttl=settings.session_ttl_delta)


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        types.Tool(
            name="example",
            description="An example tool",
            inputSchema={{"type": "object", "properties": {{"text": {{"type": "string"}}}}}},
        )
    ]


@server.call_tool()
async def call_tool(name: str, args: dict[str, Any]) -> Any:
    if name != "example":
        raise McpError.of(types.NOT_FOUND, "Tool not found")
    return {{"text": args.get("text", "")}}


async def main() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, shutdown_timeout=settings.shutdown_timeout)


if __name__ == "__main__":
    anyio.run(main)
'''

PYPROJECT_TEMPLATE = """\
[project]
name = "{name}"
version = "0.1.0"
requires-python = ">=3.11"
dependencies = ["mcpkit"]
"""

DEFAULT_ENTRY = "server.py"
IGNORED_DIRS = {"build", "__pycache__", ".git", ".venv", "venv"}


class CliError(click.ClickException):
    """Printed to stderr as ``Error: <message>``; exits with code 1."""


def _require_project(root: Path) -> dict:
    pyproject = root / "pyproject.toml"
    if not pyproject.is_file():
        raise CliError("pyproject.toml not found, are you in an MCP project directory?")
    try:
        return tomllib.loads(pyproject.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise CliError(f"invalid pyproject.toml: {exc}") from exc


def _python_files(root: Path) -> list[Path]:
    return sorted(
        path for path in root.rglob("*.py") if not IGNORED_DIRS.intersection(path.relative_to(root).parts[:-1])
    )


def snapshot_mtimes(root: Path) -> dict[Path, float]:
    """Modification time of every watched ``.py`` file under ``root``."""
    snapshot: dict[Path, float] = {}
    for path in _python_files(root):
        try:
            snapshot[path] = path.stat().st_mtime
        except FileNotFoundError:
            continue
    return snapshot


def _start(entry: Path) -> subprocess.Popen:
    click.echo(f"Starting {entry.name}", err=True)
    return subprocess.Popen([sys.executable, str(entry)])


def _stop(process: subprocess.Popen, timeout: float = 5.0) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Scaffold, run and package MCP servers."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]


@cli.command()
@click.argument("name")
def init(name: str) -> None:
    """Create a new server project in directory NAME."""
    project = Path(name)
    if (project / DEFAULT_ENTRY).exists():
        raise CliError(f"{project / DEFAULT_ENTRY} already exists")

    try:
        project.mkdir(parents=True, exist_ok=True)
        (project / DEFAULT_ENTRY).write_text(SERVER_TEMPLATE.format(name=project.name))
        pyproject = project / "pyproject.toml"
        if not pyproject.exists():
            pyproject.write_text(PYPROJECT_TEMPLATE.format(name=project.name))
    except OSError as exc:
        raise CliError(f"failed to create project: {exc}") from exc

    click.echo(f"Successfully created project {project.name}")
    click.echo("To get started:")
    click.echo(f"  cd {name}")
    click.echo(f"  python {DEFAULT_ENTRY}")


@cli.command()
@click.option("--entry", default=DEFAULT_ENTRY, show_default=True, help="Server script to run")
@click.option("--interval", default=1.0, show_default=True, help="Seconds between file checks")
def dev(entry: str, interval: float) -> None:
    """Run the server and restart it whenever a .py file changes."""
    root = Path.cwd()
    _require_project(root)
    entry_path = root / entry
    if not entry_path.is_file():
        raise CliError(f"{entry} not found")

    snapshot = snapshot_mtimes(root)
    process = _start(entry_path)
    click.echo("Development server started. Press Ctrl+C to exit.", err=True)
    try:
        while True:
            time.sleep(interval)
            current = snapshot_mtimes(root)
            if current != snapshot:
                snapshot = current
                logger.info("Change detected, restarting %s", entry)
                _stop(process)
                process = _start(entry_path)
    except KeyboardInterrupt:
        pass
    finally:
        _stop(process)


@cli.command()
@click.option("--entry", default=DEFAULT_ENTRY, show_default=True, help="Server script used as __main__")
def build(entry: str) -> None:
    """Pack the project into build/<project>.pyz."""
    root = Path.cwd()
    project = _require_project(root)
    entry_path = root / entry
    if not entry_path.is_file():
        raise CliError(f"{entry} not found")

    name = project.get("project", {}).get("name") or root.name
    build_dir = root / "build"
    target = build_dir / f"{name}.pyz"

    try:
        build_dir.mkdir(exist_ok=True)
        with tempfile.TemporaryDirectory() as staging:
            staging_root = Path(staging)
            for path in _python_files(root):
                relative = path.relative_to(root)
                destination = staging_root / ("__main__.py" if path == entry_path else relative)
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, destination)
            zipapp.create_archive(staging_root, target, interpreter="/usr/bin/env python3")
    except OSError as exc:
        raise CliError(f"failed to build server: {exc}") from exc

    click.echo("Server built successfully!")
    click.echo(f"Archive location: {target}")
