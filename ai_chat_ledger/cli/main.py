"""
CLI interface for AI Chat Ledger.

Provides command-line access to conversations and token usage.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_chat_ledger.config.loader import (
    PLAN_LIMITS,
    SYSTEM_PROMPTS,
    Settings,
    get_plan_limits,
    load_settings,
)
from ai_chat_ledger.config.logging_setup import configure_logging
from ai_chat_ledger.core.errors import QuotaExceeded
from ai_chat_ledger.core.ledger import UsageLedger
from ai_chat_ledger.sdk.chat_service import ChatService
from ai_chat_ledger.storage.repository import (
    ConversationRepository,
    UsageRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

USER_ENV_VAR = "AI_CHAT_LEDGER_USER"


class _State:
    config_path: Optional[str] = None


_state = _State()


def _settings() -> Settings:
    settings = load_settings(_state.config_path)
    configure_logging(settings.log_level)
    return settings


def _user_option():
    return typer.Option(None, "--user", "-u", envvar=USER_ENV_VAR, help="Principal to act as")


def _plan_option():
    return typer.Option("free", "--plan", "-p", help="Plan tier: free, pro or premium")


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML settings file"
    )
):
    """AI Chat Ledger CLI."""
    _state.config_path = config
    if ctx.invoked_subcommand is None:
        console.print("AI Chat Ledger - Use --help to see available commands")


@app.command()
def init():
    """Initialize the AI Chat Ledger database."""
    try:
        settings = _settings()
        initialize_schema(settings.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def plans():
    """Show token quotas for every plan tier."""
    table = Table(title="Plan Limits")
    table.add_column("Plan")
    table.add_column("Daily tokens", justify="right")
    table.add_column("Monthly tokens", justify="right")
    table.add_column("Max tokens/request", justify="right")
    for tier, limits in PLAN_LIMITS.items():
        table.add_row(
            tier.value,
            f"{limits.daily_tokens:,}",
            f"{limits.monthly_tokens:,}",
            f"{limits.max_tokens_per_request:,}",
        )
    console.print(table)


@app.command()
def usage(
    user: Optional[str] = _user_option(),
    plan: str = _plan_option()
):
    """Show token usage and remaining quota for a user."""
    if not user:
        _fail("User not found")
    try:
        get_plan_limits(plan)
        settings = _settings()
        ledger = UsageLedger(UsageRepository(settings.db_path))
        status = ledger.check_quota(user, plan)
    except Exception as e:
        _fail(str(e))

    _display_quota(user, plan, status)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def new(
    user: Optional[str] = _user_option(),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Conversation title"),
    preset: Optional[str] = typer.Option(
        None,
        "--preset",
        help=f"System prompt preset: {', '.join(SYSTEM_PROMPTS)}"
    )
):
    """Start a new conversation."""
    if preset is not None and preset not in SYSTEM_PROMPTS:
        _fail(f"Unknown preset: {preset}")
    try:
        service = ChatService.from_settings(_settings(), with_client=False)
        conversation = service.create_conversation(
            user,
            title=title,
            system_prompt=SYSTEM_PROMPTS[preset] if preset else None
        )
    except Exception as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Created conversation {conversation.id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def chat(
    conversation_id: str = typer.Argument(..., help="Conversation to continue"),
    message: str = typer.Argument(..., help="Message to send"),
    user: Optional[str] = _user_option(),
    plan: str = _plan_option()
):
    """Send a message and print the assistant's reply."""
    try:
        service = ChatService.from_settings(_settings())
        reply = service.send_message(user, conversation_id, message, plan)
    except QuotaExceeded as e:
        console.print(f"[bold yellow]{e}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        _fail(str(e))

    console.print(f"\n{reply.title}", style="bold", markup=False)
    console.print(reply.content, markup=False)
    console.print(f"\n[dim]{reply.tokens_used:,} tokens on {reply.model}[/]")
    if not reply.usage_recorded.ok:
        console.print("[dim]Usage could not be recorded for this reply.[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def conversations(
    user: Optional[str] = _user_option(),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum conversations to list")
):
    """List a user's conversations, most recent first."""
    if not user:
        _fail("User not found")
    try:
        settings = _settings()
        records = ConversationRepository(settings.db_path).list_conversations(user, limit=limit)
    except Exception as e:
        _fail(str(e))

    if not records:
        console.print("\n[dim]No conversations yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Conversations")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Updated")
    for record in records:
        table.add_row(record.id, record.title, record.updated_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def delete(
    conversation_id: str = typer.Argument(..., help="Conversation to delete"),
    user: Optional[str] = _user_option()
):
    """Delete a conversation and its messages."""
    try:
        service = ChatService.from_settings(_settings(), with_client=False)
        service.delete_conversation(user, conversation_id)
    except Exception as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Deleted conversation {conversation_id}")
    sys.exit(EXIT_CODE_PASS)


def _format_tokens(amount: int) -> str:
    """Format a token count with thousands separators."""
    return f"{amount:,}"


def _format_percent_used(used: int, limit: int) -> str:
    """Format usage as a share of the limit."""
    if limit == 0:
        return "N/A"
    return f"{(used / limit) * 100:,.1f}%"


def _display_quota(user: str, plan: str, status):
    """Display quota status in a compact report."""
    console.print(f"\n[bold]Token Usage for {user}[/bold] ({plan.lower()} plan)")
    console.print("-" * 40)
    console.print(
        f"Daily: {_format_tokens(status.daily_usage)} / {_format_tokens(status.daily_limit)} "
        f"({_format_percent_used(status.daily_usage, status.daily_limit)})"
    )
    console.print(
        f"Monthly: {_format_tokens(status.monthly_usage)} / {_format_tokens(status.monthly_limit)} "
        f"({_format_percent_used(status.monthly_usage, status.monthly_limit)})"
    )
    console.print(f"Remaining today: {_format_tokens(status.remaining_daily)}")
    console.print(f"Remaining this month: {_format_tokens(status.remaining_monthly)}")
    verdict = "[green]ALLOWED[/]" if status.allowed else "[red]LIMIT REACHED[/]"
    console.print(f"\n[bold]Verdict:[/bold] {verdict}")


if __name__ == "__main__":
    app()
