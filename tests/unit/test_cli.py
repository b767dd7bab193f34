"""Tests for the latchkey command line."""

import json
from pathlib import Path

import pytest

from latchkey.cli.main import build_parser, main
from latchkey.secrets.plan import Plan, map_field, read_plan, write_plan
from latchkey.secrets.types import ExitCode, SecretRef


@pytest.fixture
def plaintext(write_config) -> dict:
    document = {"api": {"key": "sk-live-123", "url": "https://api.example.com"}}
    write_config(document)
    return document


@pytest.fixture
def run_cli(scripted_prompter):
    def _run(home: Path, *args: str, answers: list[str] | None = None) -> int:
        argv = ["--home", str(home), "secrets", *args]
        return main(argv, scripted_prompter(answers or []))

    return _run


class TestParser:
    """Tests for argument parsing."""

    @pytest.mark.parametrize(
        "argv",
        [
            [],
            ["secrets"],
            ["secrets", "rotate"],
            ["secrets", "apply"],
            ["secrets", "configure", "--providers-only", "--skip-provider-setup"],
        ],
    )
    def test_usage_errors_exit_2(self, argv: list[str]) -> None:
        """Test argparse rejects invalid invocations with status 2."""
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(argv)
        assert exc_info.value.code == ExitCode.USAGE

    def test_json_apply_requires_yes(self, run_cli, home: Path) -> None:
        """Test --json --apply without --yes is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            run_cli(home, "configure", "--json", "--apply")
        assert exc_info.value.code == ExitCode.USAGE

    def test_apply_from(self) -> None:
        """Test --from is stored as the plan path."""
        args = build_parser().parse_args(["secrets", "apply", "--from", "plan.json", "--dry-run"])
        assert args.plan_path == Path("plan.json")
        assert args.dry_run


class TestAuditCommand:
    """Tests for secrets audit."""

    def test_check_with_plaintext_exits_1(self, run_cli, home: Path, plaintext, capsys) -> None:
        """Test --check signals warning findings."""
        assert run_cli(home, "audit", "--check") == ExitCode.FINDINGS
        out = capsys.readouterr().out
        assert "plaintext-secret api.key" in out
        assert "sk-live-123" not in out

    def test_without_check_exits_0(self, run_cli, home: Path, plaintext) -> None:
        """Test findings alone do not fail a plain audit."""
        assert run_cli(home, "audit") == ExitCode.OK

    def test_unresolved_exits_3(self, run_cli, home: Path, write_config) -> None:
        """Test unresolved refs take priority over other findings."""
        write_config(
            {
                "api": {"key": "sk-live-123"},
                "bot": {"token": {"source": "provider", "provider": "vault1", "id": "t"}},
            }
        )
        assert run_cli(home, "audit", "--check") == ExitCode.UNRESOLVED

    def test_json_output(self, run_cli, home: Path, plaintext, capsys) -> None:
        """Test --json prints exactly one document on stdout."""
        assert run_cli(home, "audit", "--check", "--json") == ExitCode.FINDINGS
        data = json.loads(capsys.readouterr().out)
        assert data["exitCode"] == 1
        assert data["findings"][0]["location"] == "api.key"

    def test_clean_audit(self, run_cli, home: Path, capsys) -> None:
        """Test a host without config is clean."""
        assert run_cli(home, "audit", "--check") == ExitCode.OK
        assert "Audit clean" in capsys.readouterr().out


class TestReloadCommand:
    """Tests for secrets reload."""

    def test_reload_ok(self, run_cli, home: Path, write_config, monkeypatch, capsys) -> None:
        """Test a resolvable config reloads."""
        monkeypatch.setenv("LK_CLI_API_KEY", "sk-cli")
        write_config({"api": {"key": {"source": "env", "id": "LK_CLI_API_KEY"}}})

        assert run_cli(home, "reload", "--json") == ExitCode.OK
        assert json.loads(capsys.readouterr().out) == {"ok": True, "version": 1, "warningCount": 0}

    def test_reload_unresolved(self, run_cli, home: Path, write_config, capsys) -> None:
        """Test an unresolved ref exits 3 and names the field."""
        write_config({"api": {"key": {"source": "provider", "provider": "vault1", "id": "k"}}})
        assert run_cli(home, "reload") == ExitCode.UNRESOLVED
        assert "api.key" in capsys.readouterr().err

    def test_reload_malformed_config(self, run_cli, home: Path, settings) -> None:
        """Test an unreadable config is a failure."""
        settings.config_file.write_text("{broken")
        assert run_cli(home, "reload") == ExitCode.FAILURE


class TestApplyCommand:
    """Tests for secrets apply."""

    def test_unregistered_provider_exits_3(
        self, run_cli, home: Path, tmp_path: Path, plaintext, read_config
    ) -> None:
        """Test a plan mapping to an unknown provider changes nothing."""
        plan = map_field(
            Plan(), "api.key", SecretRef(source="provider", provider="vault1", id="api-key")
        )
        path = write_plan(plan, tmp_path / "plan.json")

        assert run_cli(home, "apply", "--from", str(path)) == ExitCode.UNRESOLVED
        assert read_config() == plaintext

    def test_apply_plan(
        self, run_cli, home: Path, tmp_path: Path, plaintext, read_config, monkeypatch, capsys
    ) -> None:
        """Test applying a valid plan migrates the field."""
        monkeypatch.setenv("LK_CLI_API_KEY", "sk-cli")
        plan = map_field(Plan(), "api.key", SecretRef(source="env", id="LK_CLI_API_KEY"))
        path = write_plan(plan, tmp_path / "plan.json")
        capsys.readouterr()

        assert run_cli(home, "apply", "--from", str(path), "--json") == ExitCode.OK
        data = json.loads(capsys.readouterr().out)
        assert data["applied"]
        assert data["migratedFields"] == ["api.key"]
        assert read_config()["api"]["key"] == {"source": "env", "id": "LK_CLI_API_KEY"}

    def test_dry_run(self, run_cli, home: Path, tmp_path: Path, plaintext, read_config) -> None:
        """Test --dry-run leaves the config alone."""
        plan = map_field(Plan(), "api.key", SecretRef(source="env", id="LK_CLI_UNSET"))
        path = write_plan(plan, tmp_path / "plan.json")

        assert run_cli(home, "apply", "--from", str(path), "--dry-run") == ExitCode.OK
        assert read_config() == plaintext

    def test_missing_plan_file(self, run_cli, home: Path, tmp_path: Path, capsys) -> None:
        """Test an unreadable plan file is a failure."""
        assert run_cli(home, "apply", "--from", str(tmp_path / "nope.json")) == ExitCode.FAILURE
        assert "nope.json" in capsys.readouterr().err


class TestConfigureCommand:
    """Tests for secrets configure."""

    def test_writes_plan_file(
        self, run_cli, home: Path, tmp_path: Path, plaintext, read_config
    ) -> None:
        """Test mapping a field and saving the plan without applying."""
        plan_path = tmp_path / "plan.json"
        code = run_cli(
            home,
            "configure",
            "--skip-provider-setup",
            "--plan-out",
            str(plan_path),
            answers=["env:LK_CLI_API_KEY"],
        )

        assert code == ExitCode.OK
        plan = read_plan(plan_path)
        assert plan.mapped_paths == ["api.key"]
        assert "sk-live-123" not in plan_path.read_text()
        assert read_config() == plaintext

    def test_add_provider_and_apply(
        self, run_cli, home: Path, tmp_path: Path, plaintext, read_config
    ) -> None:
        """Test the full interactive flow with --apply --yes."""
        keys = tmp_path / "keys.json"
        keys.write_text(json.dumps({"api": "api-from-file"}))
        answers = ["add", "keys", "file", str(keys), "json", "done", "file@keys:api"]

        assert run_cli(home, "configure", "--apply", "--yes", answers=answers) == ExitCode.OK

        on_disk = read_config()
        assert on_disk["api"]["key"] == {"source": "file", "provider": "keys", "id": "api"}
        assert on_disk["secrets"]["providers"][0]["alias"] == "keys"

    def test_confirmation_declined(self, run_cli, home: Path, plaintext, read_config) -> None:
        """Test answering no to the confirmation writes nothing."""
        answers = ["env:LK_CLI_API_KEY", "n"]
        code = run_cli(home, "configure", "--skip-provider-setup", "--apply", answers=answers)

        assert code == ExitCode.OK
        assert read_config() == plaintext

    def test_failed_preflight_writes_no_plan(
        self, run_cli, home: Path, tmp_path: Path, plaintext
    ) -> None:
        """Test a plan with unresolvable refs is not saved."""
        plan_path = tmp_path / "plan.json"
        code = run_cli(
            home,
            "configure",
            "--skip-provider-setup",
            "--plan-out",
            str(plan_path),
            answers=["provider@vault1:api-key"],
        )

        assert code == ExitCode.UNRESOLVED
        assert not plan_path.exists()

    def test_invalid_answer_is_asked_again(
        self, scripted_prompter, home: Path, plaintext
    ) -> None:
        """Test a malformed ref answer re-prompts for the same field."""
        prompter = scripted_prompter(["not-a-ref", "env:LK_CLI_API_KEY"])
        code = main(
            ["--home", str(home), "secrets", "configure", "--skip-provider-setup"], prompter
        )

        assert code == ExitCode.OK
        assert prompter.asked == ["api.key (blank to skip)", "api.key (blank to skip)"]

    def test_input_closed(self, run_cli, home: Path, plaintext) -> None:
        """Test running out of input aborts with a failure."""
        assert run_cli(home, "configure", answers=[]) == ExitCode.FAILURE

    def test_nothing_to_change(self, run_cli, home: Path, capsys) -> None:
        """Test an empty plan is reported, not applied."""
        assert run_cli(home, "configure", "--skip-provider-setup") == ExitCode.OK
        assert "Nothing to change" in capsys.readouterr().out
