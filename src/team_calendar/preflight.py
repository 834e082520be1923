"""
Preflight checks run before talking to the service, to catch common
misconfigurations early.
"""

import logging
import sqlite3
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from team_calendar.devops_client import DevOpsClient
from team_calendar.models import CalendarConfig
from team_calendar.models import TeamCalendarError
from team_calendar.storage import SqliteDataStore

logger = logging.getLogger(__name__)

_AUTH_STATUS_CODES = frozenset({203, 401, 403})

# (setting, config file key, command-line option)
_REQUIRED_SETTINGS = (
    ("Organization URL", "organization_url", "--org"),
    ("Project", "project", "--project"),
    ("Access token", "token", "--token or AZURE_DEVOPS_EXT_PAT"),
)


async def run_preflight_checks(
    cfg: CalendarConfig, console: Console, client: DevOpsClient | None = None
) -> bool:
    """Return True if the calendar may be opened; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Connection settings present
    for label, key, option in _REQUIRED_SETTINGS:
        if not getattr(cfg, key):
            hint = f"Set {key} in the config file or pass {option}"
            issues.append((label, "not configured", hint))

    # 2. Data store opens and accepts writes
    problem = _check_data_store(cfg.data_db_path)
    if problem:
        issues.append(("Data store", problem, f"Check permissions on {cfg.data_db_path.parent}"))

    # 3. Project reachable with these credentials
    if cfg.organization_url and cfg.project and cfg.token:
        owns_client = client is None
        client = client or DevOpsClient(cfg.organization_url, cfg.token)
        try:
            await client.get_project(cfg.project)
        except TeamCalendarError as e:
            logger.error("Cannot reach project %s: %s", cfg.project, e)
            issues.append(("Azure DevOps", str(e), _service_hint(cfg, e)))
        finally:
            if owns_client:
                await client.aclose()

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _check_data_store(db_path: Path) -> str | None:
    try:
        with SqliteDataStore(db_path) as store:
            # Takes the write lock, so a read-only file or directory fails here.
            store.conn.execute("BEGIN IMMEDIATE")
            store.conn.execute("ROLLBACK")
    except (TeamCalendarError, sqlite3.Error) as e:
        logger.error("Data store %s is not usable: %s", db_path, e)
        return str(e)
    return None


def _service_hint(cfg: CalendarConfig, error: TeamCalendarError) -> str:
    status_code = getattr(error, "status_code", None)
    if status_code in _AUTH_STATUS_CODES:
        return "Token rejected; check it has Work Items (Read) and Project (Read) scope"
    if status_code == 404:
        return f"Project '{cfg.project}' not found in {cfg.organization_url}"
    return "Check the organization URL and your network connection"


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column(style="bold red", no_wrap=True)
    table.add_column()
    for label, detail, hint in issues:
        message = Text(detail, style="red")
        message.append(f"\n{hint}", style="yellow")
        table.add_row(Text(f"✗ {label}"), message)

    console.print(
        Panel(
            table,
            title="[bold red]Preflight checks failed[/bold red]",
            subtitle=f"{len(issues)} problem(s)",
        )
    )
