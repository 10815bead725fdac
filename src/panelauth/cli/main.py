"""
PanelAuth CLI Main Entry Point
"""

from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from panelauth import __version__
from panelauth.core.config import get_settings
from panelauth.core.logging import get_logger
from panelauth.database import (
    create_engine_from_settings, create_session_factory, init_db, session_scope,
)
from panelauth.database.models import ADMIN_ROLE
from panelauth.security.authentication import AuthenticationService
from panelauth.security.crypto import generate_random_password
from panelauth.security.errors import PanelAuthError
from panelauth.security.rbac import AuthorizationResolver, seed_default_data

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="panelauth",
    help="PanelAuth - control panel identity and access administration",
    rich_markup_mode="rich",
    no_args_is_help=True,
)


def _session_factory():
    settings = get_settings()
    engine = create_engine_from_settings(settings)
    init_db(engine)
    return create_session_factory(engine)


def _fail(error: PanelAuthError) -> None:
    logger.error(f"Command failed: {error.code}: {error.message}")
    console.print(f"[bold red]✗[/bold red] {error.message}")
    raise typer.Exit(code=1)


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit"
    ),
) -> None:
    """
    🔐 PanelAuth - identity core of the server-management panel
    """
    if version:
        console.print(f"[bold blue]PanelAuth[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.command("init-db")
def init_database() -> None:
    """
    🗄️  Create tables and seed the system roles and permissions
    """
    with session_scope(_session_factory()) as db:
        counts = seed_default_data(db)

    console.print(Panel(
        f"[bold green]✓[/bold green] Schema ready\n"
        f"[dim]Roles added: {counts['roles']}[/dim]\n"
        f"[dim]Permissions added: {counts['permissions']}[/dim]",
        title="[bold blue]Database[/bold blue]",
        border_style="green"
    ))


@app.command("create-admin")
def create_admin(
    username: str = typer.Argument(..., help="Administrator username"),
    email: str = typer.Argument(..., help="Administrator email"),
    password: Optional[str] = typer.Option(
        None,
        "--password",
        "-p",
        help="Password; a random one is generated when omitted"
    ),
) -> None:
    """
    👤 Create an administrator account
    """
    generated = password is None
    password = password or generate_random_password(20)

    with session_scope(_session_factory()) as db:
        seed_default_data(db)
        service = AuthenticationService(db)
        try:
            user = service.admin_create_user(None, username, email, password, role=ADMIN_ROLE)
        except PanelAuthError as e:
            _fail(e)

    lines = [f"[bold green]✓[/bold green] Administrator [bold]{user.username}[/bold] created"]
    if generated:
        lines.append(f"Password: [yellow]{password}[/yellow]")
        lines.append("[dim]Store it now; it will not be shown again.[/dim]")
    console.print(Panel("\n".join(lines), title="[bold blue]Create Admin[/bold blue]", border_style="green"))


@app.command("unlock-user")
def unlock_user(username: str = typer.Argument(..., help="Account to unlock")) -> None:
    """
    🔓 Clear a lockout and the failed-attempt counter
    """
    with session_scope(_session_factory()) as db:
        service = AuthenticationService(db)
        try:
            user = service.get_user_by_username(username)
            service.unlock_user(user.id)
        except PanelAuthError as e:
            _fail(e)

    console.print(f"[bold green]✓[/bold green] {username} unlocked")


@app.command("block-ip")
def block_ip(
    ip_address: str = typer.Argument(..., help="Address to block"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Reason for the block"),
    minutes: Optional[int] = typer.Option(
        None,
        "--minutes",
        "-m",
        help="Block duration; permanent when omitted"
    ),
) -> None:
    """
    🚫 Add an address to the login blacklist
    """
    duration = timedelta(minutes=minutes) if minutes else None
    with session_scope(_session_factory()) as db:
        AuthenticationService(db).block_ip(ip_address, reason=reason, created_by="cli", duration=duration)

    until = f"for {minutes} minutes" if minutes else "permanently"
    console.print(f"[bold green]✓[/bold green] {ip_address} blocked {until}")


@app.command("unblock-ip")
def unblock_ip(ip_address: str = typer.Argument(..., help="Address to unblock")) -> None:
    """
    ✅ Remove an address from the login blacklist
    """
    with session_scope(_session_factory()) as db:
        removed = AuthenticationService(db).unblock_ip(ip_address)

    if removed:
        console.print(f"[bold green]✓[/bold green] {ip_address} unblocked")
    else:
        console.print(f"[yellow]![/yellow] {ip_address} was not blocked")


@app.command()
def roles() -> None:
    """
    📋 List roles and their permissions
    """
    table = Table(title="Roles", show_lines=False)
    table.add_column("Name", style="bold cyan")
    table.add_column("Display name")
    table.add_column("Priority", justify="right")
    table.add_column("System", justify="center")
    table.add_column("Permissions", style="dim")

    with session_scope(_session_factory()) as db:
        for role in AuthorizationResolver(db).list_roles():
            table.add_row(
                role.name,
                role.display_name,
                str(role.priority),
                "✓" if role.is_system else "",
                ", ".join(role.permissions or []) or "-",
            )

    console.print(table)


if __name__ == "__main__":
    app()
