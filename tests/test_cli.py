from __future__ import annotations

import json
import textwrap

import pytest
from typer.testing import CliRunner

from monorun import FlagDef, FlagError, Task
from monorun.cli import app, parse_task_flags


CONFIG = textwrap.dedent(
    """
    from monorun import Config, FlagDef, Task, detect_by_file, serial, with_options


    def hello(ctx):
        ctx.print(f"hello from {ctx.path} count={ctx.flag('count')}")


    def boom(ctx):
        raise RuntimeError("kaboom")


    greet = Task(name="greet", usage="say hello", do=hello, flags={"count": FlagDef(1, "how many")})
    secret = Task(name="secret", do=lambda ctx: ctx.print("hidden ran"), hidden=True)
    deploy = Task(name="deploy", usage="ship it", do=lambda ctx: ctx.print("deployed"))
    fail = Task(name="fail", usage="always fails", do=boom)

    config = Config(
        auto=serial(with_options(greet, detect=detect_by_file("pyproject.toml")), secret),
        manual=[deploy, fail],
    )
    """
)


@pytest.fixture
def cli(repo, monkeypatch):
    (repo / ".monorun").mkdir()
    (repo / ".monorun" / "config.py").write_text(CONFIG)
    monkeypatch.chdir(repo)
    monkeypatch.delenv("TASK_SCOPE", raising=False)
    monkeypatch.delenv("MONORUN_VERBOSE", raising=False)
    runner = CliRunner()

    def invoke(*args, **kwargs):
        return runner.invoke(app, list(args), **kwargs)

    return invoke


def test_list_hides_hidden_and_groups_manual(cli):
    result = cli("list")
    assert result.exit_code == 0, result.output
    assert "greet" in result.output
    assert "say hello" in result.output
    assert "secret" not in result.output
    tasks_part, manual_part = result.output.split("Manual tasks:")
    assert "deploy" in manual_part
    assert "deploy" not in tasks_part


def test_list_all_shows_hidden(cli):
    result = cli("list", "--all")
    assert result.exit_code == 0, result.output
    assert "secret" in result.output


def test_plan_json(cli):
    result = cli("plan", "--json")
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["moduleDirectories"] == [".", "a"]
    names = {t["name"]: t for t in data["tasks"]}
    assert set(names) == {"greet", "secret", "deploy", "fail"}
    assert names["secret"]["hidden"] is True
    assert names["greet"]["paths"] == ["a"]
    assert data["tree"]["type"] == "serial"


def test_plan_text(cli):
    result = cli("plan")
    assert result.exit_code == 0, result.output
    assert "Module directories:" in result.output
    assert "  - root" in result.output
    assert "greet [a]" in result.output


def test_bare_invocation_runs_auto_tree(cli):
    result = cli()
    assert result.exit_code == 0, result.output
    assert ":: greet [a]" in result.output
    assert "hello from a count=1" in result.output
    assert "hidden ran" in result.output
    assert "deployed" not in result.output


def test_run_with_flag(cli):
    result = cli("run", "greet", "--count", "3")
    assert result.exit_code == 0, result.output
    assert "hello from a count=3" in result.output


def test_run_manual_task(cli):
    result = cli("run", "deploy")
    assert result.exit_code == 0, result.output
    assert "deployed" in result.output


def test_run_unknown_task(cli):
    result = cli("run", "nope")
    assert result.exit_code == 1
    assert "Error: unknown task 'nope'" in result.output


def test_run_failing_task(cli):
    result = cli("run", "fail")
    assert result.exit_code == 1
    assert "Error: RuntimeError: kaboom" in result.output


def test_run_bad_flag_value(cli):
    result = cli("run", "greet", "--count", "many")
    assert result.exit_code == 1
    assert "Error: task 'greet'" in result.output


def test_task_help_lists_flags(cli):
    result = cli("run", "greet", "--help")
    assert result.exit_code == 0, result.output
    assert "--count" in result.output
    assert "how many" in result.output


def test_scope_outside_task_paths(cli):
    result = cli("run", "greet", env={"TASK_SCOPE": "b"})
    assert result.exit_code == 1
    assert "does not run in b" in result.output


def test_scope_inside_task_paths(cli):
    result = cli("--scope", "a", "run", "greet")
    assert result.exit_code == 0, result.output
    assert "hello from a" in result.output


def test_missing_config(repo, monkeypatch):
    monkeypatch.chdir(repo)
    result = CliRunner().invoke(app, ["list"])
    assert result.exit_code == 1
    assert "config module not found" in result.output


class TestParseTaskFlags:
    def make(self) -> Task:
        return Task(
            name="t",
            do=lambda ctx: None,
            flags={
                "count": FlagDef(1),
                "dry_run": FlagDef(False),
                "ratio": FlagDef(0.5),
                "label": FlagDef(""),
            },
        )

    def test_only_given_flags_are_returned(self):
        assert parse_task_flags(self.make(), ["--count", "4"]) == {"count": 4}

    def test_types_and_names(self):
        parsed = parse_task_flags(self.make(), ["--dry-run", "--ratio", "0.25", "--label", "x"])
        assert parsed == {"dry_run": True, "ratio": 0.25, "label": "x"}

    def test_negated_bool(self):
        t = Task(name="t", do=lambda ctx: None, flags={"fix": FlagDef(True)})
        assert parse_task_flags(t, ["--no-fix"]) == {"fix": False}

    def test_unknown_flag(self):
        with pytest.raises(FlagError, match="task 't'"):
            parse_task_flags(self.make(), ["--nope"])


def test_broken_config_reports_error(repo, monkeypatch):
    (repo / ".monorun").mkdir()
    (repo / ".monorun" / "config.py").write_text("config = (\n")
    monkeypatch.chdir(repo)
    result = CliRunner().invoke(app, ["list"])
    assert result.exit_code == 1
    assert "Error: failed to load" in result.output
    assert "SyntaxError" in result.output
