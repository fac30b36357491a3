from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from conformance_harness.config import HarnessConfig, load_config
from conformance_harness.errors import (
    ConfigurationError,
    InvalidStateError,
    LockedVariableError,
    UnknownInstanceError,
)
from conformance_harness.graph import TestModule, load_module
from conformance_harness.models import ClientConfig
from conformance_harness.observability import get_logger, setup_logging
from conformance_harness.orchestrator import Orchestrator, RunOutcome, http_client_factory
from conformance_harness.persistence import JsonRunStore
from conformance_harness.reporting.aggregate import write_report
from conformance_harness.sequences import default_registry
from conformance_harness.validation import JsonSchemaValidator

_MODULE_HELP = "Path to a test module YAML/JSON (default: module_path from config)."


def _parse_pairs(items: Sequence[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise ConfigurationError(f"expected NAME=VALUE, got {item!r}")
        name, value = item.split("=", 1)
        out[name.strip()] = value
    return out


def _module_from_args(args: argparse.Namespace, config: HarnessConfig) -> TestModule:
    path = args.module or (Path(config.module_path) if config.module_path else None)
    if path is None:
        raise ConfigurationError("no test module given (use --module or module_path)")
    return load_module(Path(path), default_registry())


def _orchestrator(args: argparse.Namespace, config: HarnessConfig, module: TestModule) -> Orchestrator:
    logger = get_logger("conformance", module=module.name)
    validator = JsonSchemaValidator.from_dir(args.schemas_dir) if args.schemas_dir else None
    return Orchestrator(
        module.test_set(args.test_set),
        JsonRunStore(Path(args.store_dir or config.store_dir)),
        http_client_factory(config, logger),
        validator=validator,
        logger=logger,
        disable_tls_tests=config.disable_tls_tests,
    )


def _print_outcome(outcome: RunOutcome) -> None:
    for sr in outcome.results:
        print(f"{sr.result.upper():7} {sr.test_case_id} {sr.message}".rstrip())
    if outcome.waiting is not None:
        print(f"WAITING at endpoint {outcome.waiting.wait_at_endpoint!r}")
        if outcome.redirect_to_url:
            print(f"Open in a browser: {outcome.redirect_to_url}")
    print(f"instance_id: {outcome.instance_id}")


def _cmd_validate(args: argparse.Namespace, config: HarnessConfig) -> int:
    module = _module_from_args(args, config)
    cases = sum(len(ts.test_cases()) for ts in module.test_sets.values())
    print(f"OK: module {module.name} ({len(module.test_sets)} test sets, {cases} test cases)")
    return 0


def _cmd_list(args: argparse.Namespace, config: HarnessConfig) -> int:
    module = _module_from_args(args, config)
    test_set = module.test_set(args.test_set)
    if args.json:
        print(json.dumps(test_set.to_dict(), indent=2, sort_keys=True))
        return 0
    for group in test_set.groups:
        print(f"{group.id}: {group.name}")
        for tc in group.test_cases:
            flag = " (optional)" if tc.sequence.optional else ""
            print(f"  {tc.id}: {tc.title}{flag}")
    return 0


def _cmd_run(args: argparse.Namespace, config: HarnessConfig) -> int:
    module = _module_from_args(args, config)
    orch = _orchestrator(args, config, module)

    if args.instance_id:
        instance_id = args.instance_id
        if args.var:
            orch.update_variables(instance_id, _parse_pairs(args.var))
    else:
        if not args.url:
            raise ConfigurationError("--url is required when starting a new run")
        client = ClientConfig(
            client_id=args.client_id,
            client_secret=args.client_secret,
            scopes=args.scopes or "",
            confidential_client=bool(args.client_secret),
            redirect_uri=args.redirect_uri,
        )
        instance = orch.create_instance(
            args.url,
            fhir_version=args.fhir_version or module.fhir_version,
            client=client,
            variables=_parse_pairs(args.var),
        )
        instance_id = instance.id

    if args.group:
        outcome = orch.run_group(instance_id, args.group, skipped_only=args.skipped_only)
    else:
        ids = args.test_case or [tc.id for tc in orch.test_set.test_cases()]
        outcome = orch.run_test_cases(instance_id, ids)
    _print_outcome(outcome)
    return 0


def _cmd_resume(args: argparse.Namespace, config: HarnessConfig) -> int:
    module = _module_from_args(args, config)
    orch = _orchestrator(args, config, module)
    outcome = orch.resume(
        args.instance_id,
        args.endpoint,
        _parse_pairs(args.param),
        fail_message=args.fail_message,
    )
    _print_outcome(outcome)
    return 0


def _cmd_cancel(args: argparse.Namespace, config: HarnessConfig) -> int:
    module = _module_from_args(args, config)
    orch = _orchestrator(args, config, module)
    result = orch.cancel(args.instance_id)
    print(f"CANCEL  {result.test_case_id}")
    return 0


def _cmd_report(args: argparse.Namespace, config: HarnessConfig) -> int:
    module = _module_from_args(args, config)
    orch = _orchestrator(args, config, module)
    report = orch.report(args.instance_id)
    if args.output:
        write_report(args.output, report)
        print(f"[OK] wrote report -> {args.output}")
    else:
        print(json.dumps(report, indent=2, sort_keys=True))
    return 0 if report["verdict"] == "pass" else 1


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--module", type=Path, default=None, help=_MODULE_HELP)
    p.add_argument("--test_set", type=str, default=None, help="Test set id (default: module default).")
    p.add_argument("--store_dir", type=Path, default=None, help="Directory of saved run instances.")
    p.add_argument(
        "--schemas_dir",
        type=Path,
        default=None,
        help="Directory of profile JSON schemas used to validate resources.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run conformance test sets against a server.")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML config file.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    validate_p = sub.add_parser("validate", help="Load and validate a test module.")
    _add_common(validate_p)

    list_p = sub.add_parser("list", help="List groups and test cases of a test set.")
    _add_common(list_p)
    list_p.add_argument("--json", action="store_true", help="Print machine-readable JSON.")

    run_p = sub.add_parser("run", help="Run test cases (a new run unless --instance_id is given).")
    _add_common(run_p)
    run_p.add_argument("--url", type=str, default=None, help="Server base URL.")
    run_p.add_argument("--instance_id", type=str, default=None)
    run_p.add_argument("--fhir_version", type=str, default=None)
    run_p.add_argument("--client_id", type=str, default=None)
    run_p.add_argument("--client_secret", type=str, default=None)
    run_p.add_argument("--scopes", type=str, default=None)
    run_p.add_argument("--redirect_uri", type=str, default=None)
    run_p.add_argument("--group", type=str, default=None, help="Run every case of one group.")
    run_p.add_argument("--skipped_only", action="store_true", help="With --group, re-run skipped cases.")
    run_p.add_argument("--test_case", action="append", default=[], help="Test case id (repeatable).")
    run_p.add_argument("--var", action="append", default=[], help="NAME=VALUE variable (repeatable).")

    resume_p = sub.add_parser("resume", help="Deliver a callback to a waiting run.")
    _add_common(resume_p)
    resume_p.add_argument("--instance_id", type=str, required=True)
    resume_p.add_argument("--endpoint", type=str, required=True)
    resume_p.add_argument("--param", action="append", default=[], help="NAME=VALUE (repeatable).")
    resume_p.add_argument("--fail_message", type=str, default=None)

    cancel_p = sub.add_parser("cancel", help="Cancel the sequence a run is waiting on.")
    _add_common(cancel_p)
    cancel_p.add_argument("--instance_id", type=str, required=True)

    report_p = sub.add_parser("report", help="Aggregate results of a run.")
    _add_common(report_p)
    report_p.add_argument("--instance_id", type=str, required=True)
    report_p.add_argument("--output", type=Path, default=None)

    return parser


_COMMANDS: dict[str, Any] = {
    "validate": _cmd_validate,
    "list": _cmd_list,
    "run": _cmd_run,
    "resume": _cmd_resume,
    "cancel": _cmd_cancel,
    "report": _cmd_report,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        config = load_config(args.config)
        setup_logging(config)
        return int(_COMMANDS[args.cmd](args, config))
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except (InvalidStateError, LockedVariableError, UnknownInstanceError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
