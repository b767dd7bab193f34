"""CLI entrypoint for latchkey."""

import argparse
import asyncio
import json
import shlex
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

from latchkey import __version__
from latchkey.cli.prompts import PromptAborted, Prompter
from latchkey.config.settings import Settings
from latchkey.core.logging import LogContext, get_logger, setup_logging
from latchkey.secrets.apply import ApplyResult
from latchkey.secrets.audit import AuditReport
from latchkey.secrets.plan import PlanBuilder, read_plan, write_plan
from latchkey.secrets.preflight import PreflightResult
from latchkey.secrets.protocol import AliasConflict, PlanValidationFailure, UnresolvedReference
from latchkey.secrets.rpc import RELOAD_METHOD, dispatch, error_body
from latchkey.secrets.runtime import SecretsRuntime
from latchkey.secrets.types import ExitCode, ProviderKind, SecretRef
from latchkey.utils.exceptions import LatchkeyError

logger = get_logger(__name__)

Command = Callable[[argparse.Namespace, SecretsRuntime, Prompter], Awaitable[int]]

EPILOG = """
Exit codes:
  0 - Success (or a clean audit)
  1 - Audit --check found warnings only
  2 - Usage error (invalid arguments)
  3 - Unresolved secret references
  4 - Failure (alias conflict, invalid plan, apply error, unreadable config)
  5 - Plan applied but the reload after it failed

Environment variables:
  LATCHKEY_HOME        - State directory (default ~/.latchkey)
  LATCHKEY_CONFIG_PATH - Configuration file (default $LATCHKEY_HOME/config.json)
  LATCHKEY_LOG_LEVEL   - Log level for stderr logging
"""


def emit(args: argparse.Namespace, data: dict[str, Any], lines: list[str]) -> None:
    """Print one JSON document with --json, else human-readable lines."""
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        for line in lines:
            print(line)


def exit_code_for(error: Exception) -> ExitCode:
    if isinstance(error, UnresolvedReference):
        return ExitCode.UNRESOLVED
    return ExitCode.FAILURE


def report_error(args: argparse.Namespace, error: Exception) -> None:
    if args.json:
        print(json.dumps(error_body(error), indent=2))
        return
    print(f"Error: {error}", file=sys.stderr)
    for failure in getattr(error, "failures", []):
        print(f"  {failure.field_path}: {failure.message}", file=sys.stderr)


def _failure_lines(checked: PreflightResult) -> list[str]:
    lines = [f"  {f.field_path}: [{f.code.value}] {f.message}" for f in checked.hard_failures]
    lines += [f"  {w.field_path}: {w.message} (warning)" for w in checked.warnings]
    return lines


async def cmd_reload(args: argparse.Namespace, runtime: SecretsRuntime, prompter: Prompter) -> int:
    """Resolve every reference and publish a new runtime snapshot."""
    await runtime.start(resolve=False)
    body = await dispatch(runtime, RELOAD_METHOD)
    if not body["ok"]:
        if args.json:
            print(json.dumps(body, indent=2))
        else:
            error = body["error"]
            print(f"Error: {error['message']}", file=sys.stderr)
            for failure in error["failures"]:
                print(f"  {failure['fieldPath']}: {failure['message']}", file=sys.stderr)
        if body["error"]["type"] == UnresolvedReference.__name__:
            return ExitCode.UNRESOLVED
        return ExitCode.FAILURE
    emit(
        args,
        body,
        [
            f"Reloaded secrets: snapshot version {body['version']}, "
            f"{body['warningCount']} warning(s)"
        ],
    )
    return ExitCode.OK


def _audit_lines(report: AuditReport) -> list[str]:
    if report.clean:
        return ["Audit clean: no findings"]
    lines = [f"Audit found {len(report.findings)} issue(s):"]
    for finding in report.findings:
        lines.append(f"  [{finding.severity.value}] {finding.kind.value} {finding.location}")
        if finding.detail:
            lines.append(f"      {finding.detail}")
    if report.resolution_warnings:
        lines.append(f"{report.resolution_warnings} reference(s) resolved to no value")
    return lines


async def cmd_audit(args: argparse.Namespace, runtime: SecretsRuntime, prompter: Prompter) -> int:
    """Report plaintext secrets, unresolved references, drift and residue."""
    await runtime.start(resolve=False)
    report = await runtime.audit()
    emit(args, report.to_dict(), _audit_lines(report))
    return report.exit_code if args.check else ExitCode.OK


def _ask_metadata(prompter: Prompter, kind: ProviderKind) -> dict[str, Any]:
    if kind == ProviderKind.ENV:
        prefix = prompter.ask("Variable prefix (blank for none)")
        return {"prefix": prefix} if prefix else {}
    if kind == ProviderKind.FILE:
        path = prompter.ask("Secrets file path")
        mode = prompter.choose("File mode", ["json", "singleValue"], default="json")
        return {"path": path, "mode": mode}
    command = shlex.split(prompter.ask("Command (the secret id is appended)"))
    metadata: dict[str, Any] = {"command": command}
    timeout = prompter.ask("Timeout in seconds (blank for default)")
    if timeout:
        metadata["timeout_seconds"] = float(timeout)
    return metadata


def _provider_phase(builder: PlanBuilder, prompter: Prompter) -> None:
    while True:
        existing = ", ".join(builder.providers) or "none"
        prompter.say(f"Providers: {existing}")
        action = prompter.choose(
            "Provider action", ["add", "edit", "remove", "done"], default="done"
        )
        if action == "done":
            return
        alias = prompter.ask("Provider alias")
        try:
            if action == "add":
                kinds = [k.value for k in ProviderKind]
                kind = ProviderKind(prompter.choose("Provider kind", kinds))
                builder.add_provider(alias, kind, _ask_metadata(prompter, kind))
            elif action == "edit":
                current = builder.providers.get(alias)
                if current is None:
                    prompter.say(f"Error: Provider '{alias}' does not exist")
                    continue
                builder.edit_provider(alias, _ask_metadata(prompter, current.kind))
            else:
                builder.remove_provider(alias)
        except (AliasConflict, PlanValidationFailure, ValueError) as e:
            prompter.say(f"Error: {e}")


def _mapping_phase(builder: PlanBuilder, prompter: Prompter, include_migrated: bool) -> None:
    pending = builder.pending_fields(include_migrated=include_migrated)
    if not pending:
        prompter.say("No secret fields left to map")
        return
    prompter.say(
        "Map each field to a reference, e.g. env:OPENAI_API_KEY or provider@vault:kv/openai"
    )
    for entry in pending:
        while True:
            answer = prompter.ask(f"{entry.path} (blank to skip)")
            if not answer:
                break
            try:
                builder.map_field(entry.path, SecretRef.parse(answer))
                break
            except (PlanValidationFailure, ValueError) as e:
                prompter.say(f"Error: {e}")


async def cmd_configure(
    args: argparse.Namespace, runtime: SecretsRuntime, prompter: Prompter
) -> int:
    """Build a plan interactively, preflight it, then save and/or apply it."""
    await runtime.start(resolve=False)
    builder = runtime.plan_builder()

    try:
        if not args.skip_provider_setup:
            _provider_phase(builder, prompter)
        if not args.providers_only:
            _mapping_phase(builder, prompter, args.include_migrated)
    except PromptAborted:
        print("Aborted: input closed before the plan was finished", file=sys.stderr)
        return ExitCode.FAILURE

    plan = builder.build()
    if plan.is_empty:
        emit(args, {"ok": True, "plan": None}, ["Nothing to change"])
        return ExitCode.OK

    checked = await runtime.preflight(plan)
    summary = plan.summary()
    lines = ["Plan:"]
    lines += [f"  provider: {change}" for change in summary["providerChanges"]]
    lines += [f"  field: {mapping}" for mapping in summary["fieldMappings"]]
    data: dict[str, Any] = {
        "ok": checked.ok,
        "plan": json.loads(plan.to_json()),
        "preflight": checked.to_dict(),
    }

    if not checked.ok:
        emit(args, data, lines + ["Preflight failed:", *_failure_lines(checked)])
        return ExitCode.UNRESOLVED if checked.has_unresolved else ExitCode.FAILURE
    lines.append(f"Preflight passed with {checked.warning_count} warning(s)")
    lines += _failure_lines(checked)

    if args.plan_out:
        path = write_plan(plan, args.plan_out)
        data["planFile"] = str(path)
        lines.append(f"Plan written to {path}")

    if not args.apply:
        emit(args, data, lines)
        return ExitCode.OK

    if not args.yes:
        for line in lines:
            prompter.say(line)
        lines = []
        if not prompter.confirm("Apply this plan now?"):
            print("Not applied", file=sys.stderr)
            return ExitCode.OK

    result = await runtime.apply(plan)
    data["apply"] = result.to_dict()
    data["ok"] = result.exit_code == ExitCode.OK
    emit(args, data, lines + _apply_lines(result))
    return result.exit_code


def _apply_lines(result: ApplyResult) -> list[str]:
    if not result.applied:
        return [
            "Dry run: preflight passed, nothing written",
            f"Would map {len(result.mapped_fields)} field(s), "
            f"{len(result.migrated_fields)} of them holding plaintext today",
        ]
    lines = [
        f"Applied: {len(result.provider_changes)} provider change(s), "
        f"{len(result.mapped_fields)} field mapping(s), "
        f"{len(result.migrated_fields)} plaintext value(s) migrated"
    ]
    if result.reload_error is not None:
        lines.append(f"Reload after apply failed: {result.reload_error}")
        lines.append("The plan is committed; fix the references and run 'latchkey secrets reload'")
    else:
        lines.append(f"Reloaded: snapshot version {result.reload_version}")
    return lines


async def cmd_apply(args: argparse.Namespace, runtime: SecretsRuntime, prompter: Prompter) -> int:
    """Apply a saved plan file."""
    plan = read_plan(args.plan_path)
    await runtime.start(resolve=False)
    result = await runtime.apply(plan, dry_run=args.dry_run)
    emit(args, result.to_dict(), _apply_lines(result))
    return result.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="latchkey",
        description="Latchkey - secret references, audits and one-way migrations",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"latchkey {__version__}")
    parser.add_argument("--config", type=Path, help="Configuration file")
    parser.add_argument("--home", type=Path, help="State directory")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level for stderr logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    secrets_parser = subparsers.add_parser(
        "secrets",
        help="Secret reference operations",
        description="Resolve, audit and migrate secret references",
    )
    secrets_subparsers = secrets_parser.add_subparsers(dest="secrets_command", required=True)

    json_flag = argparse.ArgumentParser(add_help=False)
    json_flag.add_argument("--json", action="store_true", help="Print one JSON document to stdout")

    reload_parser = secrets_subparsers.add_parser(
        "reload",
        parents=[json_flag],
        help="Resolve references and publish a new snapshot",
    )
    reload_parser.set_defaults(handler=cmd_reload)

    audit_parser = secrets_subparsers.add_parser(
        "audit",
        parents=[json_flag],
        help="Scan for plaintext secrets, unresolved references, drift and residue",
    )
    audit_parser.add_argument(
        "--check",
        action="store_true",
        help="Exit non-zero when anything is found (1 warnings, 3 unresolved)",
    )
    audit_parser.set_defaults(handler=cmd_audit)

    configure_parser = secrets_subparsers.add_parser(
        "configure",
        parents=[json_flag],
        help="Interactively build a migration plan",
    )
    phases = configure_parser.add_mutually_exclusive_group()
    phases.add_argument("--providers-only", action="store_true", help="Only change providers")
    phases.add_argument(
        "--skip-provider-setup", action="store_true", help="Only map fields to references"
    )
    configure_parser.add_argument("--plan-out", type=Path, help="Write the plan to this new file")
    configure_parser.add_argument(
        "--apply", action="store_true", help="Apply the plan after preflight"
    )
    configure_parser.add_argument("--yes", action="store_true", help="Apply without confirmation")
    configure_parser.add_argument(
        "--include-migrated",
        action="store_true",
        help="Also offer fields that already hold a reference",
    )
    configure_parser.set_defaults(handler=cmd_configure, _parser=configure_parser)

    apply_parser = secrets_subparsers.add_parser(
        "apply",
        parents=[json_flag],
        help="Apply a saved plan file",
    )
    apply_parser.add_argument(
        "--from", dest="plan_path", type=Path, required=True, help="Plan file"
    )
    apply_parser.add_argument("--dry-run", action="store_true", help="Preflight only")
    apply_parser.set_defaults(handler=cmd_apply)

    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.home is not None:
        overrides["home"] = args.home
    if args.config is not None:
        overrides["config_path"] = args.config
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    return Settings(**overrides)


async def run(args: argparse.Namespace, settings: Settings, prompter: Prompter) -> int:
    handler: Command = args.handler
    runtime = SecretsRuntime(settings)
    try:
        return await handler(args, runtime, prompter)
    except LatchkeyError as e:
        logger.warning("command_failed", error_type=type(e).__name__)
        report_error(args, e)
        return exit_code_for(e)
    finally:
        await runtime.close()


def main(argv: list[str] | None = None, prompter: Prompter | None = None) -> int:
    """Main CLI entrypoint. Returns the process exit code.

    Usage errors exit through argparse with status 2.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.secrets_command == "configure" and args.json and args.apply and not args.yes:
        args._parser.error("--json with --apply requires --yes")

    settings = settings_from_args(args)
    setup_logging(settings=settings)

    with LogContext(operation=f"secrets.{args.secrets_command}", operation_id=str(uuid4())):
        return int(asyncio.run(run(args, settings, prompter or Prompter())))


def entrypoint() -> None:
    sys.exit(main())


if __name__ == "__main__":
    entrypoint()
