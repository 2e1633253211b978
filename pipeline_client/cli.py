import argparse
import asyncio
import json
import os
import shutil
import sys
from datetime import datetime
from pathlib import Path

from pipeline_common.errors import DefinitionError
from pipeline_definition.devsecops import REQUIRED_VARIABLES, DevSecOpsSettings, build_devsecops_pipeline
from pipeline_definition.docs import check_docs, render_pipeline_docs, update_readme
from pipeline_definition.loader import DEFAULT_DEFINITION_FILE, load_definition
from pipeline_definition.validator import ERROR, WARNING, Finding, has_errors, validate
from pipeline_definition.variables import BUILTIN_VARIABLES, step_references
from pipeline_definition.writer import dump_definition, write_definition

from .client import (
    approve_run,
    check_service,
    get_run,
    list_runs,
    stop_run,
    stream_run,
)

EXIT_DEFINITION_ERROR = 2


def get_server_url() -> str:
    """
    Get the approval service URL from environment variable or use default.

    Environment variables:
    - PIPELINE_SERVER_URL: Custom server URL
    """
    return os.environ.get("PIPELINE_SERVER_URL", "http://localhost:8000")


def get_api_key(cli_arg: str | None = None) -> str | None:
    """
    Get API key from multiple sources in priority order.

    Priority (highest to lowest):
    1. Command line argument (--api-key)
    2. Environment variable (PIPELINE_API_KEY)
    3. Config file (~/.pipeline/config)

    Config file format (~/.pipeline/config):
        api_key=pl_abc123...
    """
    if cli_arg:
        return cli_arg

    env_key = os.environ.get("PIPELINE_API_KEY")
    if env_key:
        return env_key

    config_path = Path.home() / ".pipeline" / "config"
    if config_path.exists():
        try:
            for line in config_path.read_text().splitlines():
                line = line.strip()
                if line.startswith("api_key="):
                    return line[8:].strip()
        except OSError:
            pass  # Unreadable config behaves like a missing one

    return None


def format_time(time_str: str | None) -> str:
    """Format ISO timestamp to human-readable format."""
    if not time_str:
        return "N/A"
    try:
        dt = datetime.fromisoformat(time_str.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, AttributeError):
        return time_str


def format_success(success: bool | None) -> str:
    """Format success value to human-readable string."""
    if success is None:
        return "-"
    return "✓" if success else "✗"


def exit_with_error(e: Exception) -> None:
    """Print a client error, with login help for authentication failures."""
    print(f"Error: {e}", file=sys.stderr)
    error_msg = str(e).lower()
    if "401" in error_msg or "403" in error_msg or "unauthorized" in error_msg:
        print("\nAuthentication required. Please provide an API key using one of:", file=sys.stderr)
        print("  1. Command line flag: --api-key <key>", file=sys.stderr)
        print("  2. Environment variable: PIPELINE_API_KEY=<key>", file=sys.stderr)
        print("  3. Config file: ~/.pipeline/config (format: api_key=<key>)", file=sys.stderr)
    sys.exit(1)


def load_or_exit(path: str):
    try:
        return load_definition(path)
    except DefinitionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_DEFINITION_ERROR)


async def _stored_variable_names(db_path: str) -> set[str]:
    # Imported here so the client only needs aiosqlite when --db-path is used
    from pipeline_persistence.sqlite_repository import SQLiteRunRepository

    repository = SQLiteRunRepository(db_path)
    try:
        await repository.initialize()
        return {variable.name for variable in await repository.list_all_variables()}
    finally:
        await repository.close()


def cmd_validate(args: argparse.Namespace) -> None:
    try:
        definition = load_definition(args.file)
    except DefinitionError as e:
        finding = Finding("E001", ERROR, str(e))
        if args.json_mode:
            print(json.dumps([finding.to_dict()], indent=2))
        else:
            print(finding, file=sys.stderr)
        sys.exit(EXIT_DEFINITION_ERROR)

    declared = set(args.declare or [])
    if args.from_env:
        declared |= set(os.environ)
    if args.db_path:
        declared |= asyncio.run(_stored_variable_names(args.db_path))

    findings = validate(definition, declared)

    if args.json_mode:
        print(json.dumps([finding.to_dict() for finding in findings], indent=2))
    else:
        for finding in findings:
            print(finding)

    errors = sum(1 for finding in findings if finding.severity == ERROR)
    warnings = sum(1 for finding in findings if finding.severity == WARNING)
    failed = errors > 0 or (args.strict and warnings > 0)

    if not args.json_mode:
        if failed:
            print(f"✗ {args.file}: {errors} error(s), {warnings} warning(s)")
        else:
            print(f"✓ {args.file} is valid ({warnings} warning(s))")
    sys.exit(1 if failed else 0)


def cmd_generate(args: argparse.Namespace) -> None:
    settings = DevSecOpsSettings(
        node_image=args.node_image,
        trivy_severity=args.trivy_severity,
        blocking_scans=args.blocking_scans,
        production_branch=args.production_branch,
        lint_command=args.lint_command,
    )
    definition = build_devsecops_pipeline(settings)

    if args.output == "-":
        print(dump_definition(definition), end="")
        sys.exit(0)

    path = write_definition(definition, args.output)
    print(f"✓ Wrote {path} ({len(definition.pipelines)} pipelines)")
    sys.exit(0)


def _docs_pipeline_key(definition, branch: str | None) -> str:
    try:
        return definition.select(branch=branch).name
    except DefinitionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_DEFINITION_ERROR)


def cmd_docs(args: argparse.Namespace) -> None:
    definition = load_or_exit(args.file)
    key = args.pipeline or _docs_pipeline_key(definition, args.branch)
    if key not in definition.pipelines:
        print(f"Error: Unknown pipeline: {key}", file=sys.stderr)
        sys.exit(EXIT_DEFINITION_ERROR)

    readme = Path(args.readme)
    text = readme.read_text() if readme.exists() else ""

    if args.check:
        findings = check_docs(text, definition, key)
        for finding in findings:
            print(finding)
        if has_errors(findings):
            print(f"✗ {readme} does not document pipeline {key}")
            sys.exit(1)
        print(f"✓ {readme} documents pipeline {key}")
        sys.exit(0)

    readme.write_text(update_readme(text, render_pipeline_docs(definition, key)))
    print(f"✓ Updated {readme} with pipeline {key}")
    sys.exit(0)


def cmd_doctor(args: argparse.Namespace) -> None:
    ok = True

    def report(passed: bool | None, message: str) -> None:
        nonlocal ok
        mark = "-" if passed is None else format_success(passed)
        print(f"{mark} {message}")
        if passed is False:
            ok = False

    definition = None
    try:
        definition = load_definition(args.file)
        report(True, f"{args.file} parses ({len(definition.pipelines)} pipelines)")
    except DefinitionError as e:
        report(False, f"{e}")

    if definition is not None:
        referenced: set[str] = set()
        custom_inputs: set[str] = set()
        for pipeline in definition.pipelines.values():
            custom_inputs |= set(pipeline.variables)
            for step in pipeline.steps:
                referenced |= step_references(step)
        needed = sorted(referenced - BUILTIN_VARIABLES - custom_inputs)
        missing = [name for name in needed if name not in os.environ]
        if missing:
            report(False, f"Variables missing from the environment: {', '.join(missing)}")
        else:
            report(True, f"All {len(needed)} referenced variables are set")
        for name in missing:
            if name in REQUIRED_VARIABLES:
                print(f"    {name}: {REQUIRED_VARIABLES[name]}")

    docker = shutil.which("docker")
    report(docker is not None, f"docker found at {docker}" if docker else "docker not found on PATH")

    sonar_url = os.environ.get("SONAR_HOST_URL")
    if not sonar_url:
        report(None, "SONAR_HOST_URL not set, SonarQube check skipped")
    else:
        reachable, detail = check_service(sonar_url, "/api/system/status")
        report(reachable, f"SonarQube at {sonar_url}: {detail}")

    sys.exit(0 if ok else 1)


def cmd_list(args: argparse.Namespace, server_url: str, api_key: str | None) -> None:
    try:
        runs = list_runs(server_url=server_url, api_key=api_key)
    except RuntimeError as e:
        exit_with_error(e)

    if args.json_mode:
        print(json.dumps(runs, indent=2))
        sys.exit(0)

    if not runs:
        print("No runs found.")
        sys.exit(0)

    print(
        f"{'BUILD':<7} {'RUN ID':<38} {'PIPELINE':<20} {'STATUS':<18} {'START TIME':<22} {'SUCCESS':<8}"
    )
    print("-" * 118)

    for run in runs:
        print(
            f"{'#' + str(run['build_number']):<7} {run['run_id'][:36]:<38} "
            f"{run['pipeline'][:20]:<20} {run['status']:<18} "
            f"{format_time(run.get('start_time')):<22} {format_success(run.get('success')):<8}"
        )
    sys.exit(0)


def cmd_show(args: argparse.Namespace, server_url: str, api_key: str | None) -> None:
    try:
        run = get_run(args.run_id, server_url=server_url, api_key=api_key)
    except RuntimeError as e:
        exit_with_error(e)

    print(f"Run {run['id']} (build #{run['build_number']})")
    print(f"  Pipeline: {run['pipeline']}")
    print(f"  Branch:   {run.get('branch') or '-'}")
    print(f"  Status:   {run['status']}")
    print(f"  Started:  {format_time(run.get('start_time'))}")
    print(f"  Finished: {format_time(run.get('end_time'))}")
    print()
    print(f"{'#':<3} {'STEP':<40} {'STATUS':<18} {'EXIT':<5} {'APPROVED BY':<36}")
    print("-" * 104)
    for step in run["steps"]:
        exit_code = step.get("exit_code")
        name = step["name"] + (" *" if step.get("suppressed") else "")
        print(
            f"{step['index'] + 1:<3} {name[:40]:<40} {step['status']:<18} "
            f"{'-' if exit_code is None else exit_code:<5} {step.get('approved_by') or '-':<36}"
        )
    if any(step.get("suppressed") for step in run["steps"]):
        print("\n* step ignores failures of some commands (|| true)")
    sys.exit(0)


def cmd_wait(args: argparse.Namespace, server_url: str, api_key: str | None) -> None:
    try:
        success = False
        for event in stream_run(
            args.run_id, server_url=server_url, api_key=api_key, from_beginning=args.from_beginning
        ):
            if event["type"] == "log":
                print(event["data"], end="", flush=True)
            elif event["type"] == "step_started":
                print(f"\n==> Step {event['step'] + 1}: {event['data']}", flush=True)
            elif event["type"] == "step_completed":
                print(f"<== {event['data']} {format_success(event.get('success'))}", flush=True)
            elif event["type"] == "awaiting_approval":
                print(event["data"], end="", flush=True)
                print(f"Approve it with: pipeline approve {args.run_id}", flush=True)
            elif event["type"] == "approved":
                print(event["data"], end="", flush=True)
            elif event["type"] == "complete":
                success = event.get("success", False)
        sys.exit(0 if success else 1)
    except RuntimeError as e:
        exit_with_error(e)
    except KeyboardInterrupt:
        print(f"\n\nStopped following run {args.run_id}.", file=sys.stderr)
        print("The run continues locally. Use 'pipeline wait' to reconnect.", file=sys.stderr)
        sys.exit(130)


def cmd_approve(args: argparse.Namespace, server_url: str, api_key: str | None) -> None:
    try:
        result = approve_run(args.run_id, server_url=server_url, api_key=api_key)
    except RuntimeError as e:
        exit_with_error(e)
    print(f"✓ Approved step {result['step'] + 1} '{result['name']}' of run {result['run_id']}")
    sys.exit(0)


def cmd_stop(args: argparse.Namespace, server_url: str, api_key: str | None) -> None:
    try:
        stop_run(args.run_id, server_url=server_url, api_key=api_key)
    except RuntimeError as e:
        exit_with_error(e)
    print(f"✓ Stop requested for run {args.run_id}")
    sys.exit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DevSecOps pipeline CLI")
    subparsers = parser.add_subparsers(dest="command")

    def add_file(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--file",
            default=DEFAULT_DEFINITION_FILE,
            help=f"Pipeline definition file (default: {DEFAULT_DEFINITION_FILE})",
        )

    def add_api_key(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--api-key",
            dest="api_key",
            help="API key for authentication (can also use PIPELINE_API_KEY env var or ~/.pipeline/config)",
        )

    # pipeline validate [--file F] [--declare NAME]... [--from-env] [--strict]
    validate_parser = subparsers.add_parser("validate", help="Lint a pipeline definition")
    add_file(validate_parser)
    validate_parser.add_argument(
        "--declare",
        action="append",
        metavar="NAME",
        help="Treat a variable as declared (repeatable)",
    )
    validate_parser.add_argument(
        "--from-env",
        action="store_true",
        help="Treat every variable set in the environment as declared",
    )
    validate_parser.add_argument(
        "--db-path",
        default=None,
        help="Treat variables stored in this database as declared",
    )
    validate_parser.add_argument(
        "--strict", action="store_true", help="Fail on warnings as well as errors"
    )
    validate_parser.add_argument(
        "--json", dest="json_mode", action="store_true", help="Output findings as JSON"
    )

    # pipeline generate [--output F] [settings]
    defaults = DevSecOpsSettings()
    generate_parser = subparsers.add_parser(
        "generate", help="Write the DevSecOps pipeline definition"
    )
    generate_parser.add_argument(
        "--output",
        default=DEFAULT_DEFINITION_FILE,
        help=f"Output file, '-' for stdout (default: {DEFAULT_DEFINITION_FILE})",
    )
    generate_parser.add_argument("--node-image", default=defaults.node_image)
    generate_parser.add_argument(
        "--trivy-severity",
        default=defaults.trivy_severity,
        help=f"Severities Trivy reports (default: {defaults.trivy_severity})",
    )
    generate_parser.add_argument(
        "--blocking-scans",
        action="store_true",
        help="Fail the pipeline on scan findings instead of logging them",
    )
    generate_parser.add_argument("--production-branch", default=defaults.production_branch)
    generate_parser.add_argument("--lint-command", default=defaults.lint_command)

    # pipeline docs [--readme F] [--check]
    docs_parser = subparsers.add_parser(
        "docs", help="Generate or check the pipeline section of the README"
    )
    add_file(docs_parser)
    docs_parser.add_argument("--readme", default="README.md", help="README file (default: README.md)")
    docs_parser.add_argument(
        "--branch", default="main", help="Document the pipeline this branch runs (default: main)"
    )
    docs_parser.add_argument("--pipeline", default=None, help="Document this pipeline selector instead")
    docs_parser.add_argument(
        "--check", action="store_true", help="Only check that the README is up to date"
    )

    # pipeline doctor
    doctor_parser = subparsers.add_parser("doctor", help="Check the local environment")
    add_file(doctor_parser)

    # pipeline list [--json]
    list_parser = subparsers.add_parser("list", help="List runs")
    list_parser.add_argument(
        "--json", dest="json_mode", action="store_true", help="Output in JSON format"
    )
    add_api_key(list_parser)

    # pipeline show RUN
    show_parser = subparsers.add_parser("show", help="Show a run and its steps")
    show_parser.add_argument("run_id", help="Run ID")
    add_api_key(show_parser)

    # pipeline wait RUN [--all]
    wait_parser = subparsers.add_parser("wait", help="Follow a run until it completes")
    wait_parser.add_argument("run_id", help="Run ID to follow")
    wait_parser.add_argument(
        "--all",
        dest="from_beginning",
        action="store_true",
        help="Show all events from beginning (default: only new events)",
    )
    add_api_key(wait_parser)

    # pipeline approve RUN
    approve_parser = subparsers.add_parser("approve", help="Approve the manual step a run waits on")
    approve_parser.add_argument("run_id", help="Run ID")
    add_api_key(approve_parser)

    # pipeline stop RUN
    stop_parser = subparsers.add_parser("stop", help="Stop a run")
    stop_parser.add_argument("run_id", help="Run ID")
    add_api_key(stop_parser)

    return parser


def main(argv: list[str] | None = None):
    """Main entry point for the pipeline CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    local_commands = {
        "validate": cmd_validate,
        "generate": cmd_generate,
        "docs": cmd_docs,
        "doctor": cmd_doctor,
    }
    remote_commands = {
        "list": cmd_list,
        "show": cmd_show,
        "wait": cmd_wait,
        "approve": cmd_approve,
        "stop": cmd_stop,
    }

    if args.command in local_commands:
        local_commands[args.command](args)
    elif args.command in remote_commands:
        server_url = get_server_url()
        api_key = get_api_key(getattr(args, "api_key", None))
        remote_commands[args.command](args, server_url, api_key)

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
