import zipfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from mcpkit.cli.cli import cli, snapshot_mtimes


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_init_creates_project(runner: CliRunner):
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["init", "weather"])

        assert result.exit_code == 0, result.output
        assert "Successfully created project weather" in result.output
        server = Path("weather/server.py").read_text()
        assert 'Server("weather", version="0.1.0", session_ttl=settings.session_ttl_delta)' in server
        assert "shutdown_timeout=settings.shutdown_timeout" in server
        compile(server, "server.py", "exec")
        assert 'name = "weather"' in Path("weather/pyproject.toml").read_text()


def test_init_keeps_existing_pyproject(runner: CliRunner):
    with runner.isolated_filesystem():
        Path("weather").mkdir()
        Path("weather/pyproject.toml").write_text('[project]\nname = "custom"\n')

        result = runner.invoke(cli, ["init", "weather"])

        assert result.exit_code == 0, result.output
        assert Path("weather/pyproject.toml").read_text() == '[project]\nname = "custom"\n'


def test_init_refuses_to_overwrite(runner: CliRunner):
    with runner.isolated_filesystem():
        Path("weather").mkdir()
        Path("weather/server.py").write_text("# mine\n")

        result = runner.invoke(cli, ["init", "weather"])

        assert result.exit_code == 1
        assert "already exists" in result.output
        assert Path("weather/server.py").read_text() == "# mine\n"


@pytest.mark.parametrize("command", ["dev", "build"])
def test_requires_pyproject(runner: CliRunner, command: str):
    with runner.isolated_filesystem():
        result = runner.invoke(cli, [command])

    assert result.exit_code == 1
    assert "Error: pyproject.toml not found, are you in an MCP project directory?" in result.output


def test_build_requires_entry(runner: CliRunner):
    with runner.isolated_filesystem():
        Path("pyproject.toml").write_text('[project]\nname = "weather"\n')
        result = runner.invoke(cli, ["build"])

    assert result.exit_code == 1
    assert "server.py not found" in result.output


def test_build_invalid_pyproject(runner: CliRunner):
    with runner.isolated_filesystem():
        Path("pyproject.toml").write_text("[project\n")
        result = runner.invoke(cli, ["build"])

    assert result.exit_code == 1
    assert "invalid pyproject.toml" in result.output


def test_build_creates_archive(runner: CliRunner, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    assert runner.invoke(cli, ["init", "weather"]).exit_code == 0
    project = tmp_path / "weather"
    (project / "helpers.py").write_text("VALUE = 1\n")
    (project / "build").mkdir()
    (project / "build" / "stale.py").write_text("")
    monkeypatch.chdir(project)

    result = runner.invoke(cli, ["build"])

    assert result.exit_code == 0, result.output
    assert "Server built successfully!" in result.output
    archive = Path("build/weather.pyz")
    assert archive.is_file()
    with zipfile.ZipFile(archive) as zf:
        names = set(zf.namelist())
    assert names == {"__main__.py", "helpers.py"}


def test_snapshot_ignores_build_dirs(tmp_path: Path):
    (tmp_path / "server.py").write_text("")
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "tool.py").write_text("")
    (tmp_path / "build").mkdir()
    (tmp_path / "build" / "old.py").write_text("")
    (tmp_path / "notes.txt").write_text("")

    snapshot = snapshot_mtimes(tmp_path)

    assert set(snapshot) == {tmp_path / "server.py", tmp_path / "pkg" / "tool.py"}
