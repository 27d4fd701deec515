"""Command-line entry points for the workshop engine.

The CLI is limited to argparse wiring and translating arguments into calls
on :class:`~upholstery_erp.core_logic.CompletionOrchestrator` and the
reporting helpers. Coroutines of the business layer are driven with
:func:`asyncio.run`, one per command.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log, reporting
from .constants import EndStateType, OrderType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="workshop-cli",
        description="Command-line tools for the upholstery workshop store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "set-status": register_set_status_command(subparsers),
        "allocate": register_allocate_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "statuses": register_statuses_command(subparsers),
        "orders": register_orders_command(subparsers),
        "report": register_report_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_allocation_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--allocation",
        action="append",
        default=[],
        metavar="YYYY-MM=PCT",
        help="Percentage for one month; repeat for each month. Unlisted months get 0.",
    )
    parser.add_argument("--start", default=None, help="New service period start date (YYYY-MM-DD).")
    parser.add_argument("--end", default=None, help="New service period end date (YYYY-MM-DD).")
    parser.add_argument("--yes", action="store_true", help="Confirm without prompting.")


def register_set_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Move an order to another invoice status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("order_id")
        parser.add_argument("status")
        parser.add_argument(
            "--fix-payment",
            action="store_true",
            help="Apply the offered payment fix (mark fully paid or refund to zero).",
        )
        parser.add_argument("--resume-date", default=None, help="Expected resume date for a pending status.")
        parser.add_argument("--notes", default=None)
        parser.add_argument("--no-email", action="store_true", help="Do not send the completion email.")
        parser.add_argument("--no-review", action="store_true", help="Leave the review request out of the email.")
        _add_allocation_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status)


def register_allocate_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``allocate``."""
    name = "allocate"
    help_text = "Edit the month allocation of an order without changing its status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("order_id")
        _add_allocation_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_allocate)


def register_statuses_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``statuses``."""
    name = "statuses"
    help_text = "List the invoice-status catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_statuses)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List active orders, newest bill first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Summarize profit and loss of completed orders per period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--year", type=int, default=None)
        parser.add_argument(
            "--period",
            choices=["monthly", "quarterly", "yearly"],
            default="monthly",
        )
        parser.add_argument("--output", type=Path, default=None, help="Also export the report to this xlsx file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_allocation_args(values: Sequence[str]) -> List[Tuple[int, int, str]]:
    """Translate ``YYYY-MM=PCT`` arguments into ``(year, month, raw_pct)`` triples."""
    parsed = []
    for value in values:
        key, sep, pct = value.partition("=")
        year, dash, month = key.strip().partition("-")
        if not sep or not dash or not year.isdigit() or not month.isdigit():
            raise core_logic.ValidationError(f"Invalid allocation '{value}'; expected YYYY-MM=PCT")
        parsed.append((int(year), int(month), pct.strip()))
    return parsed


def apply_allocation_args(orchestrator: core_logic.CompletionOrchestrator, args: argparse.Namespace) -> None:
    """Apply ``--start/--end`` and ``--allocation`` edits to the open ledger."""
    if args.start or args.end:
        orchestrator.redate(args.start, args.end)

    requested = parse_allocation_args(args.allocation)
    if not requested:
        return

    ledger = orchestrator.state.ledger
    positions = {entry.key: index for index, entry in enumerate(ledger.entries)}
    for index in range(len(ledger.entries)):
        orchestrator.set_percentage(index, 0)
    for year, month, pct in requested:
        index = positions.get((year, month))
        if index is None:
            raise core_logic.ValidationError(
                f"{year}-{month:02d} is not part of the allocation period",
                remediation="edit_allocation",
            )
        orchestrator.set_percentage(index, pct)


def format_summary(summary: core_logic.CompletionSummary) -> str:
    lines = [f"Order #{summary.bill_invoice or summary.order_id} - {summary.customer_name}"]
    if summary.status_label:
        lines.append(f"New status: {summary.status_label}")
    for share in summary.shares:
        lines.append(
            f"  {share.label:<16} {share.percentage:>7}%  revenue {share.revenue:>10}  "
            f"cost {share.cost:>10}  profit {share.profit:>10}"
        )
    lines.append(f"Total: revenue {summary.revenue}  cost {summary.cost}  profit {summary.profit}")
    if summary.offers_email:
        lines.append(f"Completion email to: {summary.recipient_email}")
    return "\n".join(lines)


def make_confirm_callback(args: argparse.Namespace) -> core_logic.ConfirmCallback:
    """Build the confirmation step: print the summary and ask unless ``--yes``."""

    async def confirm(summary: core_logic.CompletionSummary) -> core_logic.Confirmation:
        print(format_summary(summary))
        confirmed = args.yes
        if not confirmed:
            answer = await asyncio.to_thread(input, "Apply? [y/N] ")
            confirmed = answer.strip().lower() in ("y", "yes")
        return core_logic.Confirmation(
            confirmed=confirmed,
            send_email=not getattr(args, "no_email", False),
            include_review_request=not getattr(args, "no_review", False),
        )

    return confirm


async def _finish(result: core_logic.CompletionResult) -> int:
    email = await result.email_result()
    if email is not None and email.success:
        print(f"Email: {email.message}")
    for warning in result.warnings:
        print(f"Warning: {warning}")
    print(f"Order {result.order_id} saved.")
    return 0


async def _confirm_and_finish(orchestrator: core_logic.CompletionOrchestrator, args: argparse.Namespace) -> int:
    apply_allocation_args(orchestrator, args)
    outcome = await orchestrator.confirm_completion(make_confirm_callback(args))
    if isinstance(outcome, core_logic.RolledBack):
        orchestrator.cancel()
        print("Nothing saved.")
        return 1
    return await _finish(outcome.result)


async def _set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    orchestrator = core_logic.CompletionOrchestrator(context)
    state = await orchestrator.request_transition(args.order_id, args.status)

    if isinstance(state, core_logic.AwaitingRemediation):
        if not args.fix_payment:
            blocked = state.blocked
            orchestrator.cancel()
            raise core_logic.ValidationError(
                f"Order {args.order_id} blocked ({blocked.reason.value}): amount {blocked.amount}. "
                "Re-run with --fix-payment to apply the adjustment.",
                remediation=blocked.reason.value,
            )
        state = await orchestrator.apply_remediation()

    if isinstance(state, core_logic.CollectingPendingDetails):
        state = await orchestrator.submit_pending_details(args.resume_date, args.notes)

    if isinstance(state, core_logic.CollectingAllocation):
        return await _confirm_and_finish(orchestrator, args)

    if isinstance(state, core_logic.Done):
        return await _finish(state.result)

    raise core_logic.InvalidStateError(f"Unexpected state {type(state).__name__}")


async def _allocate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    orchestrator = core_logic.CompletionOrchestrator(context)
    await orchestrator.begin_allocation_edit(args.order_id)
    return await _confirm_and_finish(orchestrator, args)


def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the status change workflow."""
    core_logic.ensure_schema_version(context)
    return asyncio.run(_set_status(context, args))


def run_allocate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the standalone allocation edit."""
    core_logic.ensure_schema_version(context)
    return asyncio.run(_allocate(context, args))


def run_statuses(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the invoice-status catalog."""
    statuses = asyncio.run(core_logic.list_invoice_statuses(context))
    for status in statuses:
        kind = status.end_state_type.value if status.end_state_type else ("end" if status.is_end_state else "")
        print(f"{status.value:<20} {status.label:<20} {kind}")
    return 0


def run_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the active order list."""
    orders = asyncio.run(core_logic.list_active_orders(context))
    for order in orders:
        bill = (order.get("orderDetails") or {}).get("billInvoice", "")
        print(
            f"{order.get('id', ''):<22} #{bill!s:<8} {order.get('orderType') or OrderType.INDIVIDUAL.value:<11} "
            f"{order.get('invoiceStatus', ''):<16} {core_logic.customer_name(order)}"
        )
    return 0


async def _completed_orders(context: core_logic.RuntimeContext) -> List[Dict]:
    done_values = {
        status.value
        for status in await core_logic.list_invoice_statuses(context)
        if status.end_state_type is EndStateType.DONE
    }
    return await core_logic.list_orders(context, lambda document: document.get("invoiceStatus") in done_values)


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print (and optionally export) the period report of completed orders."""

    async def build() -> reporting.PeriodReport:
        orders = await _completed_orders(context)
        tax_rates = await context.tax_rates().get_material_company_tax_rates()
        return reporting.build_period_report(orders, tax_rates, rates=context.rates, year=args.year)

    report = asyncio.run(build())
    for row in report.rows(args.period):
        print(
            f"{row.label:<16} orders {len(row.order_ids):>3}  revenue {row.revenue:>12.2f}  "
            f"cost {row.cost:>12.2f}  profit {row.profit:>12.2f}  margin {row.margin}%"
        )
    if args.output is not None:
        path = reporting.export_period_report(report, args.output)
        print(f"Report written to {path}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.PersistenceError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
