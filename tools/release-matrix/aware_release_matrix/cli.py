"""Command-line entry point: ``matrix``, ``policy``, ``run`` and ``secrets`` subcommands."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from dotenv import load_dotenv

from .conditions import ConditionEvaluator
from .config import MatrixConfig, PlatformFamily, default_config, load_config
from .context import TriggerContext, resolve_inputs
from .errors import ConfigurationError
from .matrix import expand_config
from .policy import ErrorPolicy, StageKind
from .publish import StorageAdapter, build_adapter
from .run import build_run, default_capabilities
from .secrets import PLATFORM_CREDENTIALS, resolve_secret_info, use_dotenv

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _load_local_env(root: Path) -> None:
    """Best-effort load of a repo-local .env for credentials."""

    env_file = root / ".env"
    use_dotenv(env_file)
    if env_file.exists():
        load_dotenv(env_file)


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Matrix configuration (YAML or JSON). Defaults to the built-in matrix.")


def _add_context_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--from-env", action="store_true", help="Read the trigger context from GITHUB_* variables.")
    parser.add_argument("--event", choices=["push", "pull_request", "workflow_dispatch", "merge_group"])
    parser.add_argument("--ref-name")
    parser.add_argument("--ref-kind", choices=["branch", "tag"], default="branch")
    parser.add_argument("--owner")
    parser.add_argument("--sha")
    parser.add_argument("--input", action="append", help="Dispatch input key=value (repeatable).")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="release-matrix", description="Release build matrix orchestration.")
    parser.add_argument("--log-level", default="WARNING")
    subparsers = parser.add_subparsers(dest="command", required=True)

    matrix = subparsers.add_parser("matrix", help="Print the expanded matrix for a trigger context.")
    _add_config_arguments(matrix)
    _add_context_arguments(matrix)

    policy = subparsers.add_parser("policy", help="Print gating decisions for a trigger context.")
    _add_config_arguments(policy)
    _add_context_arguments(policy)

    run = subparsers.add_parser("run", help="Build, sign, package and publish every matrix entry.")
    _add_config_arguments(run)
    _add_context_arguments(run)
    run.add_argument("--source-root", default=".")
    run.add_argument("--workspace", default="build/release-matrix")
    run.add_argument("--artifacts-dir", help="Ephemeral artifact store root (default: <workspace>/artifacts).")
    run.add_argument("--release-adapter", default="none", help="Permanent release store adapter (none, github, command).")
    run.add_argument("--adapter-arg", action="append", help="Release adapter option key=value (repeatable).")
    run.add_argument("--entitlements", help="Entitlements plist passed to codesign.")
    run.add_argument("--max-workers", type=int)

    secrets = subparsers.add_parser("secrets", help="Report which signing credentials resolve.")
    secrets.add_argument("--platform", choices=[family.value for family in PlatformFamily], action="append")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    _load_local_env(Path.cwd())

    try:
        if args.command == "secrets":
            return _handle_secrets(args)
        config = load_config(args.config) if args.config else default_config()
        context = _resolve_context(args, config)
        if args.command == "matrix":
            return _handle_matrix(config, context)
        if args.command == "policy":
            return _handle_policy(config, context)
        if args.command == "run":
            return _handle_run(args, config, context)
    except ConfigurationError as exc:
        _print_json({"status": "error", "error": str(exc)})
        return EXIT_CONFIG

    parser.error(f"Unknown command '{args.command}'")
    return EXIT_CONFIG


def _resolve_context(args: argparse.Namespace, config: MatrixConfig) -> TriggerContext:
    declared = config.declared_inputs()
    if args.from_env:
        return TriggerContext.from_env(declared_inputs=declared)
    missing = [flag for flag, value in (("--event", args.event), ("--ref-name", args.ref_name), ("--owner", args.owner)) if not value]
    if missing:
        raise ConfigurationError(f"Trigger context requires {', '.join(missing)} (or --from-env).")
    return TriggerContext(
        event=args.event,
        ref_name=args.ref_name,
        ref_kind=args.ref_kind,
        repository_owner=args.owner,
        sha=args.sha,
        inputs=resolve_inputs(_parse_key_values(args.input), declared),
    )


def _parse_key_values(values: Optional[List[str]]) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for entry in values or []:
        if "=" not in entry:
            raise ConfigurationError(f"Expected key=value format (got '{entry}')")
        key, raw_value = entry.split("=", 1)
        if not key.strip():
            raise ConfigurationError("Key cannot be empty in key=value input.")
        pairs[key.strip()] = raw_value.strip()
    return pairs


def _handle_matrix(config: MatrixConfig, context: TriggerContext) -> int:
    entries = expand_config(config, context)
    _print_json({"count": len(entries), "entries": [entry.to_dict() for entry in entries]})
    return EXIT_OK


def _handle_policy(config: MatrixConfig, context: TriggerContext) -> int:
    context = context.with_input_defaults(config.declared_inputs())
    evaluator = ConditionEvaluator()
    policy = ErrorPolicy(config.release_predicate(), evaluator)
    _print_json(
        {
            "context": context.model_dump(mode="json"),
            "triggered": evaluator.evaluate(config.trigger_predicate(), context),
            "extended_platforms": evaluator.evaluate(config.run_scope_predicate(), context),
            "signing_tolerated": policy.is_tolerated(StageKind.SIGN, context),
            "permanent_publish": evaluator.evaluate(config.permanent_publish_predicate(), context),
        }
    )
    return EXIT_OK


def _handle_run(args: argparse.Namespace, config: MatrixConfig, context: TriggerContext) -> int:
    workspace = Path(args.workspace).resolve()
    permanent: Optional[StorageAdapter] = None
    if args.release_adapter.lower() not in ("none", ""):
        try:
            permanent = build_adapter(args.release_adapter, options=_parse_key_values(args.adapter_arg))
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
    ephemeral = build_adapter("directory", options={"root": args.artifacts_dir or str(workspace / "artifacts")})

    capabilities = default_capabilities(
        config,
        source_root=Path(args.source_root).resolve(),
        entitlements=Path(args.entitlements) if args.entitlements else None,
    )
    release_run = build_run(
        config,
        workspace=workspace,
        capabilities=capabilities,
        ephemeral=ephemeral,
        permanent=permanent,
        max_workers=args.max_workers,
    )
    try:
        report = release_run.execute(context)
    except KeyboardInterrupt:
        release_run.cancel()
        raise
    _print_json(report.to_dict())
    return EXIT_FAILED if report.status == "failure" else EXIT_OK


def _handle_secrets(args: argparse.Namespace) -> int:
    platforms = [PlatformFamily(value) for value in args.platform] if args.platform else list(PLATFORM_CREDENTIALS)
    payload: Dict[str, object] = {}
    for platform in platforms:
        entries = []
        for spec in PLATFORM_CREDENTIALS.get(platform, ()):
            info = resolve_secret_info(spec.name)
            entries.append(
                {
                    "name": spec.name,
                    "description": spec.description,
                    "present": info.value is not None,
                    "source": info.source,
                    "checked": [attempt.source for attempt in info.attempts],
                }
            )
        payload[platform.value] = entries
    _print_json(payload)
    return EXIT_OK


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
