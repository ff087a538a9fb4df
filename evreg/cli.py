#!/usr/bin/env python3
"""
EVREG Command Line Interface

Usage:
    evreg [--state PATH] [--config PATH] [--format FMT] <command> <subcommand> [options]

Commands:
    evidence    Submit, fetch and update evidence records
    extra       Attach and fetch side-channel extra info
    config      Configuration management
    version     Show version info

Registry state lives in the snapshot file named by --state. It is loaded
before every command and rewritten after every successful mutation. Without
--state the registry exists only for the duration of one command.

Exit codes: 0 success, 1 error, 2 authorization failure.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from contextlib import nullcontext
from enum import Enum
from typing import Any, List, Optional

import yaml

from evreg.config import ConfigError, get_config, get_config_manager
from evreg.core import sha256_bytes
from evreg.hardening import AuthorizationError, RegistryError
from evreg.observability import RegistryLayer, configure_logging, get_logger
from evreg.records import Evidence, ExtraInfo, Link
from evreg.registry import EvidenceRegistry
from evreg.snapshot import load_snapshot, state_lock, write_snapshot
from evreg.version import __version__, get_version_info

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_UNAUTHORIZED = 2

_logger = get_logger("cli", RegistryLayer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = EXIT_ERROR):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, sort_keys=True, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _evidence_view(record: Evidence) -> dict:
    view = record.to_dict()
    view["found"] = not record.is_empty
    return view


def _extra_view(record: ExtraInfo) -> dict:
    view = record.to_dict()
    view["found"] = not record.is_empty
    return view


class EvregCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="evreg",
            description="Evidence registry CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"evreg {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages and non-error logging",
        )
        self.parser.add_argument(
            "--state", "-s",
            type=pathlib.Path,
            help="Registry snapshot file (created on first write)",
        )
        self.parser.add_argument(
            "--config", "-c",
            type=pathlib.Path,
            help="YAML configuration file",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()
        self._registry: Optional[EvidenceRegistry] = None

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_evidence_commands()
        self._register_extra_commands()
        self._register_config_commands()
        self.subparsers.add_parser("version", help="Show version info")

    def _register_evidence_commands(self) -> None:
        evidence = self.subparsers.add_parser("evidence", help="Evidence records")
        evidence_sub = evidence.add_subparsers(dest="subcommand")

        # evidence submit
        submit = evidence_sub.add_parser("submit", help="Submit a new evidence record")
        content = submit.add_mutually_exclusive_group(required=True)
        content.add_argument("--content-hash", help="64 hex char content digest")
        content.add_argument("--content-file", type=pathlib.Path, help="File to digest with SHA-256")
        submit.add_argument("--account", "-a", required=True, help="Asserting account")
        submit.add_argument("--caller", help="Submitting identity (default: --account)")
        submit.add_argument("--signature", default="", help="Hex signature bytes")
        submit.add_argument("--header", default="", help="Opaque header text")
        submit.add_argument("--payload", default="", help="Opaque payload text")
        submit.add_argument("--link", help="Parent (side-channel) or prior (chained) evidence id")
        submit.add_argument("--prior-ref", action="append", default=[], help="Prior reference (repeatable)")

        # evidence fetch
        fetch = evidence_sub.add_parser("fetch", help="Fetch an evidence record")
        fetch.add_argument("evidence_id", help="Evidence id")

        # evidence update-resources
        update = evidence_sub.add_parser("update-resources", help="Replace the resource locator")
        update.add_argument("evidence_id", help="Evidence id")
        update.add_argument("--resources", "-r", required=True, help="New resource locator")
        update.add_argument("--account", "-a", required=True, help="Asserting account")
        update.add_argument("--caller", help="Calling identity (default: --account)")
        update.add_argument("--signature", default="", help="Hex signature bytes")

    def _register_extra_commands(self) -> None:
        extra = self.subparsers.add_parser("extra", help="Side-channel extra info")
        extra_sub = extra.add_subparsers(dest="subcommand")

        # extra attach
        attach = extra_sub.add_parser("attach", help="Attach extra info to an evidence")
        attach.add_argument("parent_id", help="Parent evidence id")
        attach.add_argument("--account", "-a", required=True, help="Asserting account")
        attach.add_argument("--caller", help="Calling identity (default: --account)")
        attach.add_argument("--signature", default="", help="Hex signature bytes")
        attach.add_argument("--operation-hash", default="", help="64 hex char operation digest")
        attach.add_argument("--payload", default="", help="Opaque payload text")

        # extra fetch
        fetch = extra_sub.add_parser("fetch", help="Fetch an extra info record")
        fetch.add_argument("extra_id", help="Extra info id")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., registry.variant)")
        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return EXIT_OK

        try:
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            observability = get_config().observability
            configure_logging(
                "error" if parsed.quiet else observability.log_level.get(),
                observability.log_format.get(),
                sys.stderr,
            )

            fmt = OutputFormat(parsed.format)
            _logger.debug(
                "Running command",
                operation=" ".join(filter(None, (parsed.command, getattr(parsed, "subcommand", None)))),
                state=str(parsed.state) if parsed.state else "",
            )
            # Load, mutate and save must not interleave with another process.
            with state_lock(parsed.state) if parsed.state else nullcontext():
                result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return EXIT_OK

        except CLIError as e:
            self._report(parsed, e)
            return e.exit_code

        except AuthorizationError as e:
            self._report(parsed, e)
            return EXIT_UNAUTHORIZED

        except (RegistryError, ConfigError, OSError, ValueError) as e:
            self._report(parsed, e)
            return EXIT_ERROR

    @staticmethod
    def _report(parsed: argparse.Namespace, error: Exception) -> None:
        if not parsed.quiet:
            print(f"Error: {error}", file=sys.stderr)

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        if subcmd:
            handler_name = f"_handle_{cmd}_{subcmd.replace('-', '_')}"
        else:
            handler_name = f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}".strip())

        return handler(args)

    # State

    def _load(self, args: argparse.Namespace) -> EvidenceRegistry:
        if self._registry is None:
            if args.state and args.state.exists():
                self._registry = load_snapshot(args.state)
            else:
                self._registry = EvidenceRegistry()
        return self._registry

    def _save(self, args: argparse.Namespace) -> Optional[str]:
        if not args.state or self._registry is None:
            return None
        args.state.parent.mkdir(parents=True, exist_ok=True)
        return write_snapshot(args.state, self._registry)

    @staticmethod
    def _signature(value: str) -> bytes:
        try:
            return bytes.fromhex(value[2:] if value.startswith("0x") else value)
        except ValueError as exc:
            raise CLIError(f"Signature must be hex: {value}") from exc

    # Evidence handlers

    def _handle_evidence_submit(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        if args.content_file:
            content_hash = sha256_bytes(args.content_file.read_bytes())
        else:
            content_hash = args.content_hash

        link = None
        if args.link:
            link = Link.main(args.link) if registry.variant == "side-channel" else Link.prior(args.link)

        evidence_id = registry.submit_evidence(
            args.header,
            link,
            args.prior_ref,
            content_hash,
            args.account,
            self._signature(args.signature),
            args.payload,
            caller=args.caller or args.account,
        )
        return {"evidence_id": evidence_id, "state_digest": self._save(args)}

    def _handle_evidence_fetch(self, args: argparse.Namespace) -> Any:
        return _evidence_view(self._load(args).fetch_evidence(args.evidence_id))

    def _handle_evidence_update_resources(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        record = registry.update_resources(
            args.evidence_id,
            args.resources,
            args.account,
            self._signature(args.signature),
            caller=args.caller or args.account,
        )
        view = _evidence_view(record)
        view["state_digest"] = self._save(args)
        return view

    # Extra info handlers

    def _handle_extra_attach(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        extra_id = registry.attach_extra_info(
            args.parent_id,
            args.account,
            self._signature(args.signature),
            args.operation_hash,
            args.payload,
            caller=args.caller or args.account,
        )
        return {
            "extra_id": extra_id,
            "parent_id": args.parent_id,
            "attachment_count": registry.attachment_count(args.parent_id),
            "state_digest": self._save(args),
        }

    def _handle_extra_fetch(self, args: argparse.Namespace) -> Any:
        return _extra_view(self._load(args).fetch_extra_info(args.extra_id))

    # Config handlers

    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("Invalid configuration: " + "; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()

    def _handle_version(self, args: argparse.Namespace) -> Any:
        # An existing snapshot fixes the variant; config only applies to new state.
        if args.state and args.state.exists():
            return get_version_info(self._load(args).variant)
        return get_version_info(get_config().registry.variant.get())


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = EvregCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
