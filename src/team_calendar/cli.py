"""
Command-line interface for the team calendar.
"""

import asyncio
import logging
import re
from configparser import ConfigParser
from contextlib import asynccontextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from team_calendar.colors import DEFAULT_COLORS
from team_calendar.devops_client import DevOpsClient
from team_calendar.models import DEFAULT_CONFIG
from team_calendar.models import DEFAULT_DATA_DB
from team_calendar.models import CalendarConfig
from team_calendar.models import CalendarEvent
from team_calendar.models import EventCategory
from team_calendar.models import FreeFormEvent
from team_calendar.models import NotFoundError
from team_calendar.models import TeamCalendarError
from team_calendar.sources import TeamCalendar
from team_calendar.storage import SqliteDataStore
from team_calendar.storage import events_key
from team_calendar.timelib import ONE_DAY
from team_calendar.timelib import MonthAndYear
from team_calendar.timelib import format_range
from team_calendar.timelib import month_and_year_to_string
from team_calendar.timelib import month_key
from team_calendar.timelib import month_picker_options
from team_calendar.timelib import parse_month
from team_calendar.timelib import to_inclusive_end

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Team calendar: iterations, days off and team events from Azure DevOps.",
)

console = Console()

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    data_db: Path = field(default_factory=lambda: DEFAULT_DATA_DB)
    organization_url: str | None = None
    project: str | None = None
    token: str | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    data_db: Annotated[
        Path,
        typer.Option("--data-db", help=f"Data DB path (default: {DEFAULT_DATA_DB})"),
    ] = DEFAULT_DATA_DB,
    org: Annotated[
        str | None,
        typer.Option("--org", help="Organization URL, e.g. https://dev.azure.com/contoso"),
    ] = None,
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Project name or id (overrides config)"),
    ] = None,
    token: Annotated[
        str | None,
        typer.Option(
            "--token",
            envvar="AZURE_DEVOPS_EXT_PAT",
            show_envvar=True,
            help="Personal access token (overrides config)",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.data_db = data_db
    state.organization_url = org
    state.project = project
    state.token = token
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if "team-calendar" not in parser:
        return {}
    return dict(parser["team-calendar"])


def _build_config(team: str | None = None, require: bool = True) -> CalendarConfig:
    config_file = _load_config_file(state.config_path)
    organization_url = state.organization_url or config_file.get("organization_url") or ""
    project = state.project or config_file.get("project") or ""
    token = state.token or config_file.get("token") or ""

    try:
        first_day_of_week = int(config_file.get("first_day_of_week", "0"))
    except ValueError:
        console.print("[bold red]Error:[/] first_day_of_week must be an integer (0 = Monday).")
        raise typer.Exit(1) from None

    if require and not (organization_url and project and token):
        console.print(
            "[bold red]Error:[/] Organization URL, project and token must be provided via "
            "[cyan]--org[/]/[cyan]--project[/]/[cyan]--token[/] or in the config file."
        )
        raise typer.Exit(1)

    return CalendarConfig(
        organization_url=organization_url,
        project=project,
        token=token,
        data_db_path=state.data_db,
        team=team or config_file.get("team") or None,
        first_day_of_week=first_day_of_week % 7,
        verbose=state.verbose,
    )


def _make_client(cfg: CalendarConfig) -> DevOpsClient:
    return DevOpsClient(cfg.organization_url, cfg.token)


@asynccontextmanager
async def _session(cfg: CalendarConfig):
    """Open the data store and the service client, and yield a bound TeamCalendar."""
    with SqliteDataStore(cfg.data_db_path) as store:
        async with _make_client(cfg) as client:
            calendar = TeamCalendar(store, client, cfg.project, cfg.first_day_of_week)
            await calendar.open(cfg.team)
            yield calendar


def _run(coro):
    """Run *coro* to completion, mapping errors to exit codes."""
    try:
        return asyncio.run(coro)
    except TeamCalendarError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None


def _parse_day(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(
            f"Invalid date {value!r}, expected YYYY-MM-DD", param_hint=name
        ) from None


def _parse_month_option(value: str | None) -> MonthAndYear:
    if value is None:
        return MonthAndYear.today()
    try:
        return parse_month(value)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--month") from None


def _swatch(color: str | None, label: str) -> Text:
    text = Text()
    if color:
        text.append("■ ", style=color)
    text.append(label)
    return text


def _month_nav(target: MonthAndYear) -> str:
    """Neighbouring months to pass to --month, e.g. ``‹ 2024-02   2024-04 ›``."""
    previous, _, following = month_picker_options(target, list_size=1)
    return f"[dim]‹ {month_key(previous)}   {month_key(following)} ›[/dim]"


def _event_dates(event: CalendarEvent) -> str:
    return format_range(event.start_date, to_inclusive_end(event.end_date, event.start_date))


async def _load_all_freeform(calendar: TeamCalendar) -> None:
    """Preload every month bucket the team has ever written."""
    store = calendar.store
    prefix = events_key(calendar.team.id, "")
    months = []
    for key in store.keys(prefix):
        try:
            months.append(parse_month(key[len(prefix):]))
        except ValueError:
            logging.getLogger(__name__).debug("Ignoring unexpected key %s", key)
    if months:
        months.sort()
        await calendar.freeform.preload(months[0].first_day, months[-1].last_day + ONE_DAY)


async def _find_event(calendar: TeamCalendar, event_id: str) -> FreeFormEvent:
    await _load_all_freeform(calendar)
    event = calendar.freeform.get_event(event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found for team '{calendar.team.name}'")
    return event


_TEAM_OPT = Annotated[
    str | None,
    typer.Option("--team", "-t", help="Team name or id (default: selected team)"),
]
_MONTH_OPT = Annotated[
    str | None,
    typer.Option("--month", "-m", help="Month as YYYY-MM (default: current month)"),
]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


# ---------------------------------------------------------------------------
# Subcommands: teams
# ---------------------------------------------------------------------------


@app.command()
def teams() -> None:
    """List the project's teams; the selected one is marked."""
    cfg = _build_config()

    async def _teams():
        async with _session(cfg) as calendar:
            return calendar.project_name, calendar.teams, calendar.team

    project_name, all_teams, selected = _run(_teams())

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("", width=1)
    table.add_column("Team")
    table.add_column("ID", style="dim", overflow="fold")
    for team in all_teams:
        marker = Text("✓", style="green") if team.id == selected.id else Text("")
        table.add_row(marker, team.name, team.id)
    console.print(Panel(table, title=f"[bold]{project_name}[/bold]", expand=False))


@app.command("select-team")
def select_team(
    team: Annotated[str, typer.Argument(help="Team name or id")],
) -> None:
    """Remember TEAM as the default team for this project."""
    cfg = _build_config()

    async def _select():
        async with _session(cfg) as calendar:
            return await calendar.select_team(team)

    selected = _run(_select())
    console.print(f"Selected team [bold]{selected.name}[/] [dim]({selected.id})[/dim]")


# ---------------------------------------------------------------------------
# Subcommands: read views
# ---------------------------------------------------------------------------


@app.command()
def events(month: _MONTH_OPT = None, team: _TEAM_OPT = None) -> None:
    """Show iterations, days off and team events for a month."""
    cfg = _build_config(team)
    target = _parse_month_option(month)

    async def _events():
        async with _session(cfg) as calendar:
            start, end = await calendar.preload_month(target)
            return calendar.team, calendar.get_events(start, end)

    selected, entries = _run(_events())

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Dates", no_wrap=True)
    table.add_column("Title")
    table.add_column("Category")
    table.add_column("ID", style="dim", overflow="fold")
    for event in entries:
        title = Text(event.title, style="dim" if event.display == "background" else "")
        table.add_row(
            _event_dates(event), title, _swatch(event.color, event.category), event.id
        )

    heading = f"[bold]{selected.name}[/bold] · {month_and_year_to_string(target)}"
    body = table if entries else Text("No events", style="dim")
    console.print(Panel(body, title=heading, subtitle=_month_nav(target)))


@app.command()
def day(
    when: Annotated[str, typer.Argument(metavar="DATE", help="Date as YYYY-MM-DD")],
    team: _TEAM_OPT = None,
) -> None:
    """Show who is off on DATE, and team events covering it."""
    cfg = _build_config(team)
    target = _parse_day(when, "DATE")

    async def _day():
        async with _session(cfg) as calendar:
            await calendar.preload(target, target + ONE_DAY)
            grouped = calendar.capacity.get_grouped_event_for_date(target)
            return grouped, calendar.freeform.get_events(target, target + ONE_DAY)

    grouped, team_events = _run(_day())

    body = Text()
    if grouped is None:
        body.append("Nobody is off.", style="dim")
    else:
        body.append(f"{grouped.event.title}\n", style="bold")
        for record in grouped.records:
            body.append(f"  • {record.member_display_name}", style="")
            body.append(
                f"  {format_range(record.start_date, record.end_date)}\n", style="dim"
            )
    for event in team_events:
        body.append(f"\n  {event.title}", style="bold")
        body.append(f"  [{event.category}]", style="cyan")
    console.print(Panel(body, title=f"[bold]{target.isoformat()}[/bold]"))


def _summary_table(rows: list[EventCategory]) -> Table | Text:
    if not rows:
        return Text("Nothing in this range", style="dim")
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column()
    table.add_column(style="dim")
    table.add_column(justify="right")
    for row in rows:
        table.add_row(_swatch(row.color, row.title), row.sub_title, str(row.event_count))
    return table


@app.command()
def summary(month: _MONTH_OPT = None, team: _TEAM_OPT = None) -> None:
    """Side-panel summary: iterations, days off and events by category."""
    cfg = _build_config(team)
    target = _parse_month_option(month)

    async def _summary():
        async with _session(cfg) as calendar:
            await calendar.preload_month(target)
            capacity = calendar.capacity
            return (
                capacity.get_iteration_summary_data().value,
                capacity.get_iteration_url().value,
                capacity.get_capacity_summary_data().value,
                capacity.get_capacity_url().value,
                calendar.freeform.get_summary_data().value,
            )

    iterations, iteration_url, days_off, capacity_url, categories = _run(_summary())

    console.rule(f"[bold]{month_and_year_to_string(target)}[/bold]")
    console.print(
        Panel(
            _summary_table(iterations),
            title="[bold]Iterations[/bold]",
            subtitle=iteration_url or None,
        )
    )
    console.print(
        Panel(
            _summary_table(days_off),
            title="[bold]Days off[/bold]",
            subtitle=capacity_url or None,
        )
    )
    console.print(Panel(_summary_table(categories), title="[bold]Events[/bold]"))


# ---------------------------------------------------------------------------
# Subcommands: free-form events
# ---------------------------------------------------------------------------


@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Event title")],
    start: Annotated[str, typer.Option("--start", "-s", help="First day, YYYY-MM-DD")],
    end: Annotated[
        str | None, typer.Option("--end", "-e", help="Last day, YYYY-MM-DD (default: start)")
    ] = None,
    category: Annotated[str, typer.Option("--category", help="Category")] = "",
    description: Annotated[str, typer.Option("--description", "-d", help="Description")] = "",
    team: _TEAM_OPT = None,
) -> None:
    """Create a team event."""
    cfg = _build_config(team)
    start_date = _parse_day(start, "--start")
    end_date = _parse_day(end, "--end") if end else start_date

    async def _add():
        async with _session(cfg) as calendar:
            return await calendar.freeform.create(
                title, start_date, end_date, category=category, description=description
            )

    event_id = _run(_add())
    console.print(
        f"[green]Created[/] [bold]{title}[/] "
        f"({format_range(start_date, end_date)}) [dim]{event_id}[/dim]"
    )


@app.command()
def edit(
    event_id: Annotated[str, typer.Argument(metavar="ID", help="Event id")],
    title: Annotated[str | None, typer.Option("--title", help="New title")] = None,
    start: Annotated[str | None, typer.Option("--start", "-s", help="New first day")] = None,
    end: Annotated[str | None, typer.Option("--end", "-e", help="New last day")] = None,
    category: Annotated[str | None, typer.Option("--category", help="New category")] = None,
    description: Annotated[
        str | None, typer.Option("--description", "-d", help="New description")
    ] = None,
    team: _TEAM_OPT = None,
) -> None:
    """Update a team event; options left out keep their current value."""
    cfg = _build_config(team)
    start_date = _parse_day(start, "--start") if start else None
    end_date = _parse_day(end, "--end") if end else None

    async def _edit():
        async with _session(cfg) as calendar:
            existing = await _find_event(calendar, event_id)
            await calendar.freeform.update(
                existing.id,
                title if title is not None else existing.title,
                start_date or existing.start_date,
                end_date or existing.end_date,
                category=category if category is not None else existing.category,
                description=description if description is not None else existing.description,
            )
            return calendar.freeform.get_event(existing.id)

    updated = _run(_edit())
    console.print(
        f"[green]Updated[/] [bold]{updated.title}[/] "
        f"({format_range(updated.start_date, updated.end_date)})"
    )


@app.command()
def delete(
    event_id: Annotated[str, typer.Argument(metavar="ID", help="Event id")],
    yes: _YES = False,
    team: _TEAM_OPT = None,
) -> None:
    """Delete a team event."""
    cfg = _build_config(team)

    async def _delete():
        async with _session(cfg) as calendar:
            existing = await _find_event(calendar, event_id)
            if not yes:
                console.print(
                    f"[bold]{existing.title}[/] "
                    f"({format_range(existing.start_date, existing.end_date)}) "
                    f"[dim]{existing.category}[/dim]"
                )
                typer.confirm("Delete this event?", abort=True)
            await calendar.freeform.delete(existing.id)
            return existing

    removed = _run(_delete())
    console.print(f"[green]Deleted[/] [bold]{removed.title}[/]")


# ---------------------------------------------------------------------------
# Subcommands: colors
# ---------------------------------------------------------------------------


@app.command()
def colors(team: _TEAM_OPT = None) -> None:
    """Show category colors: defaults, the team's event categories and custom overrides."""
    cfg = _build_config(team)

    async def _colors():
        async with _session(cfg) as calendar:
            await _load_all_freeform(calendar)
            return calendar.team, calendar.get_categories(), calendar.colors

    selected, categories, settings = _run(_colors())

    names = list(DEFAULT_COLORS)
    for name in categories + sorted(settings.overrides, key=str.casefold):
        if name not in names:
            names.append(name)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Category")
    table.add_column("Color")
    table.add_column("Source")
    for name in names:
        color = settings.resolve(name)
        if name in settings.overrides:
            source = Text("custom", style="yellow")
        elif name in DEFAULT_COLORS:
            source = Text("default")
        else:
            source = Text("generated", style="dim")
        table.add_row(name, _swatch(color, color), source)
    console.print(
        Panel(table, title=f"[bold]{selected.name}[/bold] · Category colors", expand=False)
    )


@app.command("set-color")
def set_color(
    category: Annotated[str, typer.Argument(help="Category name")],
    color: Annotated[str, typer.Argument(help="Color as #rrggbb")],
    team: _TEAM_OPT = None,
) -> None:
    """Override the color used for CATEGORY."""
    if not _HEX_COLOR_RE.match(color):
        raise typer.BadParameter(f"Invalid color {color!r}, expected #rrggbb", param_hint="COLOR")
    cfg = _build_config(team)

    async def _set():
        async with _session(cfg) as calendar:
            await calendar.save_colors({category: color.lower()})

    _run(_set())
    console.print(f"{category}: ", _swatch(color, color.lower()))


@app.command("reset-color")
def reset_color(
    category: Annotated[str, typer.Argument(help="Category name")],
    team: _TEAM_OPT = None,
) -> None:
    """Drop the custom color for CATEGORY."""
    cfg = _build_config(team)

    async def _reset():
        async with _session(cfg) as calendar:
            had_override = category in calendar.colors.overrides
            await calendar.reset_color(category)
            return had_override, calendar.colors.resolve(category)

    had_override, color = _run(_reset())
    if not had_override:
        console.print(f"[yellow]{category} has no custom color.[/]")
    console.print(f"{category}: ", _swatch(color, color))


# ---------------------------------------------------------------------------
# Subcommand: check
# ---------------------------------------------------------------------------


@app.command()
def check() -> None:
    """Run preflight checks against the configuration and service."""
    from team_calendar.preflight import run_preflight_checks

    cfg = _build_config(require=False)

    async def _check():
        async with _make_client(cfg) as client:
            return await run_preflight_checks(cfg, console, client)

    if not _run(_check()):
        raise typer.Exit(1)
    console.print("[green]All preflight checks passed.[/]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
