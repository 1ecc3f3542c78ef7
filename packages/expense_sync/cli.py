# ruff: noqa: I001
"""CLI for the ``expense_sync`` package.

Command handlers (``cmd_*``) return a process exit code and print errors to
stderr; the Typer commands below only parse options and delegate. ``.env`` is
loaded with ``python-dotenv`` (never overriding variables already set) before
any command runs, so ``OPENAI_API_KEY`` and ``DATABASE_URL`` can live there.
"""

from __future__ import annotations

import sys
from datetime import date, timedelta
from pathlib import Path

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging


def _services(database_url: str | None):
    # Deferred import keeps `--help` fast and free of DB/SDK side effects.
    from .services import build_services

    return build_services(database_url=database_url)


def _ensure_schema(database_url: str | None) -> None:
    from db.client import create_schema, get_engine

    if get_engine(database_url=database_url).dialect.name == "sqlite":
        create_schema(database_url=database_url)


def _parse_month(raw: str | None) -> date:
    from .dates import month_key, utc_now

    if raw is None:
        return month_key(utc_now())
    try:
        year, month = (int(p) for p in raw.split("-", 1))
        return date(year, month, 1)
    except ValueError as e:
        raise ValueError(f"month must look like YYYY-MM, got {raw!r}") from e


# ---- Command handlers --------------------------------------------------------


def cmd_import_messages(json_path: Path, *, database_url: str | None = None) -> int:
    """Load an exported SMS inbox (JSON array) into the local message store."""

    from .messages import SqlMessageStore, load_messages_json

    try:
        messages = load_messages_json(json_path)
    except FileNotFoundError:
        print(f"Error: File not found: {json_path}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: failed to read messages: {e}", file=sys.stderr)
        return 1
    try:
        _ensure_schema(database_url)
        imported = SqlMessageStore(database_url=database_url).import_messages(messages)
    except Exception as e:  # noqa: BLE001 - surface any DB error to the user
        print(f"Error: import failed: {e}", file=sys.stderr)
        return 1
    print(f"Imported {imported} of {len(messages)} messages.")
    return 0


def cmd_sync(*, database_url: str | None = None) -> int:
    """Run one sync pass in the foreground and print progress."""

    import os

    from .models import SyncState

    if not os.getenv("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY is not set in the environment.", file=sys.stderr)
        return 1
    try:
        _ensure_schema(database_url)
        services = _services(database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: failed to initialize: {e}", file=sys.stderr)
        return 1

    manager = services.sync_manager
    try:
        manager.request_sync()
        result = manager.wait()
    finally:
        manager.shutdown(cancel=False)

    if result is None:
        print("Error: sync finished without a result", file=sys.stderr)
        return 1
    p = result.progress
    print(f"{result.state.value}: {p.current} / {p.total} synced, {p.skipped} skipped")
    for e in result.persisted:
        print(
            f"  {e.payment_date:%Y-%m-%d %H:%M}  {e.merchant:<30.30} "
            f"{e.amount:>10.2f} {e.currency.value}  {e.category.value}"
        )
    if result.state is SyncState.FAILED:
        print(f"Error: sync failed: {result.error}", file=sys.stderr)
        return 1
    return 0


def cmd_budget_set(
    amount: float, *, month: str | None, description: str | None, database_url: str | None
) -> int:
    from .models import Budget

    try:
        _ensure_schema(database_url)
        services = _services(database_url)
        budget = services.store.set_budget(
            Budget(month=_parse_month(month), amount=amount, description=description)
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Budget for {budget.month:%Y-%m}: {budget.amount:.2f}")
    return 0


def cmd_budget_check(*, database_url: str | None = None) -> int:
    from .dates import month_info, month_key, utc_now

    services = _services(database_url)
    now = utc_now()
    budget = services.store.get_budget(month_key(now))
    month = month_info(now)
    spent = services.store.total_spending(month.start, month.end)
    if budget is None:
        print(f"No budget set for {now:%Y-%m}; spent {spent:.2f}.")
        return 0
    print(f"{now:%Y-%m}: spent {spent:.2f} of {budget.amount:.2f}")
    try:
        if services.budget.check_month(now):
            for note in services.dispatcher.run_due(utc_now()):
                print(f"  ! {note.title}: {note.body}")
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_set_recurring(merchant: str, recurring_type: str, *, database_url: str | None) -> int:
    from .models import RecurringType

    try:
        rtype = RecurringType(recurring_type.strip().upper())
    except ValueError:
        allowed = ", ".join(r.value for r in RecurringType)
        print(f"Error: recurring type must be one of {allowed}", file=sys.stderr)
        return 1
    services = _services(database_url)
    try:
        update = services.detector.set_recurring_type(merchant, rtype)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    nxt = f"{update.next_recurring_date:%Y-%m-%d}" if update.next_recurring_date else "-"
    print(f"{merchant}: {update.recurring_type.value}, next payment {nxt}")
    return 0


def cmd_cancel_subscription(merchant: str, *, undo: bool, database_url: str | None) -> int:
    services = _services(database_url)
    try:
        update = services.detector.set_cancellation(merchant, not undo)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if update.reminder is not None:
        print(f"{merchant}: reminder {update.reminder.kind.value} at {update.reminder.fire_at:%c}")
    else:
        print(f"{merchant}: next payment is too close for a reminder")
    return 0


def cmd_list_subscriptions(*, database_url: str | None = None) -> int:
    services = _services(database_url)
    rows = services.store.recurring_expenses()
    if not rows:
        print("No recurring payments.")
        return 0
    for e in rows:
        nxt = f"{e.next_recurring_date:%Y-%m-%d}" if e.next_recurring_date else "-"
        flag = "  [cancel]" if e.to_be_cancelled else ""
        print(
            f"{e.merchant:<30.30} {e.recurring_type.value:<8} {e.amount:>10.2f} "
            f"{e.currency.value}  next {nxt}{flag}"
        )
    return 0


def cmd_reminders(*, horizon_hours: float, database_url: str | None = None) -> int:
    """Rebuild reminders from stored state and show those due within the horizon."""

    from .dates import utc_now

    services = _services(database_url)
    services.detector.reschedule_all()
    services.budget.check_month()
    shown = services.dispatcher.run_due(utc_now() + timedelta(hours=horizon_hours))
    for note in shown:
        print(f"[{note.channel}] {note.title}: {note.body}")
    pending = services.scheduler.all_pending()
    print(f"{len(shown)} shown, {len(pending)} still pending.")
    return 0


def cmd_report(*, month: str | None, top: int, database_url: str | None = None) -> int:
    from datetime import UTC, datetime

    from .dates import month_info

    m = _parse_month(month)
    info = month_info(datetime(m.year, m.month, 1, tzinfo=UTC))
    services = _services(database_url)
    total = services.store.total_spending(info.start, info.end)
    print(f"{m:%B %Y}: total {total:.2f}")
    print("Top categories:")
    for s in services.store.top_categories(info.start, info.end, top):
        print(f"  {s.key:<16} {s.total:>10.2f}  {s.percentage:5.1f}%")
    print("Top merchants:")
    for s in services.store.top_merchants(info.start, info.end, top):
        print(f"  {s.key:<30.30} {s.total:>10.2f}  {s.percentage:5.1f}%")
    return 0


def cmd_chat(*, database_url: str | None = None) -> int:
    """Interactive chat loop; an empty line or EOF ends the session."""

    import os

    from .errors import AIServiceError

    if not os.getenv("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY is not set in the environment.", file=sys.stderr)
        return 1
    _ensure_schema(database_url)
    services = _services(database_url)
    services.chat.initialize(upcoming=services.detector.upcoming())
    for m in services.chat.history[-10:]:
        print(f"{'you' if m.is_from_user else 'bot'}> {m.text}")
    while True:
        try:
            line = input("you> ")
        except EOFError:
            break
        if not line.strip():
            break
        try:
            print(f"bot> {services.chat.send_message(line)}")
        except AIServiceError as e:
            print(f"Error: assistant unavailable ({e.kind.value}): {e}", file=sys.stderr)
            if e.fatal:
                return 1
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Sync bank SMS into expenses with OpenAI (Responses API), track recurring "
        "payments and budgets. Loads OPENAI_API_KEY and DATABASE_URL from a local .env."
    ),
)
budget_app = typer.Typer(no_args_is_help=True, help="Monthly budgets.")
subs_app = typer.Typer(no_args_is_help=True, help="Recurring payments.")
app.add_typer(budget_app, name="budget")
app.add_typer(subs_app, name="subscriptions")

# Module-level option objects to satisfy ruff B008 (no calls in defaults).
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
MONTH_OPTION: OptionInfo = typer.Option(None, "--month", help="Month as YYYY-MM (default: now).")


@app.callback()
def _root() -> None:
    """Load ``.env`` and configure logging before any subcommand."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


@app.command("import-messages")
def import_messages_cmd(
    json_path: Path = typer.Argument(..., help="Exported inbox JSON file."),  # noqa: B008
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    raise typer.Exit(cmd_import_messages(json_path, database_url=database_url))


@app.command("sync")
def sync_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    """Extract expenses from new bank messages."""

    raise typer.Exit(cmd_sync(database_url=database_url))


@budget_app.command("set")
def budget_set_cmd(
    amount: float = typer.Argument(..., help="Budget amount."),
    month: str | None = MONTH_OPTION,
    description: str | None = typer.Option(None, "--description"),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    raise typer.Exit(
        cmd_budget_set(amount, month=month, description=description, database_url=database_url)
    )


@budget_app.command("check")
def budget_check_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    raise typer.Exit(cmd_budget_check(database_url=database_url))


@subs_app.command("recurring")
def set_recurring_cmd(
    merchant: str = typer.Argument(...),
    recurring_type: str = typer.Argument(..., help="NONE, DAILY, WEEKLY, MONTHLY or YEARLY."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    raise typer.Exit(cmd_set_recurring(merchant, recurring_type, database_url=database_url))


@subs_app.command("cancel")
def cancel_cmd(
    merchant: str = typer.Argument(...),
    undo: bool = typer.Option(False, "--undo", help="Clear the cancellation mark."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    raise typer.Exit(cmd_cancel_subscription(merchant, undo=undo, database_url=database_url))


@subs_app.command("list")
def list_subs_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    raise typer.Exit(cmd_list_subscriptions(database_url=database_url))


@app.command("reminders")
def reminders_cmd(
    horizon_hours: float = typer.Option(24.0, "--horizon-hours"),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Show payment, cancellation and budget reminders due soon."""

    raise typer.Exit(cmd_reminders(horizon_hours=horizon_hours, database_url=database_url))


@app.command("report")
def report_cmd(
    month: str | None = MONTH_OPTION,
    top: int = typer.Option(10, "--top"),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    raise typer.Exit(cmd_report(month=month, top=top, database_url=database_url))


@app.command("chat")
def chat_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    """Ask questions about your spending."""

    raise typer.Exit(cmd_chat(database_url=database_url))


if __name__ == "__main__":  # pragma: no cover
    app()
