#!/usr/bin/env python3
"""
Rentcycle CLI

Operator command-line interface for the rental lifecycle engine.

Usage:
    python -m rentcycle <command> [subcommand] [options]

Commands:
    init-db     Create the database schema and enforcement triggers
    show        Show a rental with its history, claims and ledger
    attempt     Issue a command against a rental
    activate    Run one activation sweep
    table       Print the transition table
    config      Configuration management

Exit codes:
    0   success
    1   usage, configuration or store error
    2   the command was refused (the JSON error body is printed)
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from typing import Any, List, Optional

from rentcycle import __version__
from rentcycle.config import ConfigError, get_config, get_config_manager
from rentcycle.core import parse_timestamp, to_json
from rentcycle.errors import NotFound, RentcycleError, TransitionError
from rentcycle.models import Actor
from rentcycle.observability import Layer, configure_logging, get_logger
from rentcycle.states import TRANSITION_TABLE, ActorRole

log = get_logger("main", Layer.CLI)

EXIT_REFUSED = 2


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        import yaml
        plain = json.loads(json.dumps(data, default=str))
        return yaml.safe_dump(plain, default_flow_style=False, sort_keys=False)
    return _format_text(data)


def _format_text(data: Any) -> str:
    """Format data as an aligned table or key: value lines."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = [" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))]
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class RentcycleCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="rentcycle",
            description="Rental lifecycle transition engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"rentcycle {__version__}",
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
            help="Suppress non-essential output",
        )
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument("--db", help="SQLite database path (overrides store.path)")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self.subparsers.add_parser("init-db", help="Create schema and triggers")

        show = self.subparsers.add_parser("show", help="Show a rental")
        show.add_argument("record", help="Rental ID")

        attempt = self.subparsers.add_parser("attempt", help="Issue a command against a rental")
        attempt.add_argument("record", help="Rental ID")
        attempt.add_argument("lifecycle_command", metavar="COMMAND", help="Command name (see 'table')")
        attempt.add_argument("--actor", "-a", required=True, help="Principal ID issuing the command")
        attempt.add_argument(
            "--role", "-r",
            choices=[r.value for r in ActorRole],
            help="Role to act in, when the principal holds more than one",
        )
        attempt.add_argument("--payload", "-p", help="Command payload as a JSON object")

        activate = self.subparsers.add_parser("activate", help="Run one activation sweep")
        activate.add_argument("--now", help="Sweep as of this UTC timestamp (ISO 8601)")

        self.subparsers.add_parser("table", help="Print the transition table")

        self._register_config_commands()

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., policy.cancellation_cutoff_hours)")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._configure(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except TransitionError as e:
            print(to_json(e.to_dict()))
            return EXIT_REFUSED

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except RentcycleError as e:
            log.error(str(e), error_code=type(e).__name__, operation=parsed.command)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _configure(self, args: argparse.Namespace) -> None:
        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        if args.db:
            mgr.set("store.path", args.db)

        observability = mgr.config.observability
        level = "error" if args.quiet else observability.log_level.get()
        configure_logging(level, observability.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    def _processor(self, **kwargs: Any):
        from rentcycle.processor import build_processor
        return build_processor(**kwargs)

    # Lifecycle handlers
    def _handle_init_db(self, args: argparse.Namespace) -> Any:
        from rentcycle import enforcer
        from rentcycle.store import RentalStore

        config = get_config()
        store = RentalStore(config.store.path.get(), config.store.busy_timeout_ms.get())
        try:
            return {
                "db": store.db_path,
                "legal_transitions": len(store.legal_transitions()),
                "triggers": enforcer.trigger_names(),
            }
        finally:
            store.close()

    def _handle_show(self, args: argparse.Namespace) -> Any:
        processor = self._processor()
        store = processor.store
        try:
            record = store.get_rental(args.record)
            if record is None:
                raise NotFound(args.record)
            if OutputFormat(args.format) == OutputFormat.TEXT:
                return record.to_dict()
            return {
                "rental": record.to_dict(),
                "events": [e.to_dict() for e in store.list_events(record.id)],
                "claims": [c.to_dict() for c in store.list_claims(record.id)],
                "ledger": [entry.to_dict() for entry in store.list_ledger(record.id)],
            }
        finally:
            store.close()

    def _handle_attempt(self, args: argparse.Namespace) -> Any:
        payload = None
        if args.payload:
            try:
                payload = json.loads(args.payload)
            except json.JSONDecodeError as e:
                raise CLIError(f"--payload is not valid JSON: {e}") from e

        actor = Actor(args.actor, ActorRole(args.role) if args.role else None)
        processor = self._processor()
        try:
            result = processor.attempt(args.record, args.lifecycle_command, actor, payload)
            return result.to_dict()
        finally:
            processor.store.close()

    def _handle_activate(self, args: argparse.Namespace) -> Any:
        from rentcycle.activator import ScheduledActivator

        now = None
        if args.now:
            try:
                now = parse_timestamp(args.now)
            except ValueError as e:
                raise CLIError(f"--now is not an ISO 8601 timestamp: {e}") from e

        processor = self._processor(clock=(lambda: now)) if now else self._processor()
        try:
            return ScheduledActivator(processor).run_once(now).to_dict()
        finally:
            processor.store.close()

    def _handle_table(self, args: argparse.Namespace) -> Any:
        return [rule.to_dict() for rule in TRANSITION_TABLE]

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        try:
            value = mgr.get(args.path)
        except ConfigError as e:
            raise CLIError(str(e)) from e
        if hasattr(value, "__dataclass_fields__"):
            raise CLIError(f"{args.path} is a section; use 'config show'")
        return {"path": args.path, "value": value}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors and not args.quiet:
            for error in errors:
                print(f"Invalid: {error}", file=sys.stderr)
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()

    def _handle_config(self, args: argparse.Namespace) -> Any:
        raise CLIError("config needs a subcommand: get, show, validate or schema")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = RentcycleCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
