"""
KotlinRunner CLI - Run Kotlin scripts with live output and error navigation.
"""
import json
import logging
import shutil
import sys
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from kotlinrunner.config import CONFIG_FILENAME, RunnerConfig, find_config_file, load_config, resolve_config
from kotlinrunner.core import compute_char_offset, extract_locations, line_at
from kotlinrunner.execution import RunController
from kotlinrunner.samples import SAMPLE_SCRIPT
from kotlinrunner.types import SCRIPT_FILENAME, RunStatus, RunSummary
from kotlinrunner.utils.commands import build_kotlinc_command, format_command

console = Console()

TERMINATED_MESSAGE = "[Process terminated by user]"
LOCATION_STYLE = "underline bold cyan"
EXIT_INTERRUPTED = 130


def _setup_logging(verbose: bool) -> None:
    """Route library logging through rich when --verbose is given."""
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def format_duration(seconds: Optional[float]) -> str:
    """Format elapsed time as m:ss, or h:mm:ss from one hour on."""
    total = int(seconds or 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def render_line(text: str, is_error: bool = False) -> Text:
    """Render one output line: stderr in red, location spans underlined."""
    rendered = Text(text, style="red" if is_error else "")
    for match in extract_locations(text):
        rendered.stylize(LOCATION_STYLE, match.start, match.end)
    return rendered


def _context_lines(script_text: str, line: int, column: int) -> Tuple[str, str, int]:
    """Return (source line, caret line, offset) for a location in the script."""
    offset = compute_char_offset(script_text, line, column)
    line_start = compute_char_offset(script_text, line, 1)
    source = line_at(script_text, line)
    return source, " " * (offset - line_start) + "^", offset


def _print_context(script_text: str, line: int, column: int) -> None:
    source, caret, offset = _context_lines(script_text, line, column)
    console.print(f"[cyan]{SCRIPT_FILENAME}:{line}:{column}[/cyan] [dim](offset {offset})[/dim]")
    console.print(Text(f"  {source}"))
    console.print(Text(f"  {caret}", style="bold red"))


def _display_summary(summary: RunSummary, script_text: Optional[str] = None) -> None:
    """Display the run summary and, optionally, the referenced script lines."""
    if script_text is not None:
        seen: List[Tuple[int, int]] = []
        for output_line in summary.lines:
            for match in extract_locations(output_line.text):
                key = (match.line, match.column)
                if key not in seen:
                    seen.append(key)
        if seen:
            console.print()
            console.print("[bold]Referenced locations[/bold]")
            for line, column in seen:
                _print_context(script_text, line, column)

    table = Table(title="Run Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")

    label = summary.status.label(summary.exit_code)
    if summary.status == RunStatus.FINISHED_SUCCESS:
        table.add_row("Status", f"[green bold]{label}[/green bold]")
    else:
        table.add_row("Status", f"[red bold]{label}[/red bold]")

    table.add_row("Exit Code", str(summary.exit_code))
    table.add_row("Elapsed", format_duration(summary.duration))
    stderr_count = sum(1 for line in summary.lines if line.is_error)
    table.add_row("Output Lines", f"{len(summary.lines) - stderr_count} stdout / {stderr_count} stderr")
    if summary.error:
        table.add_row("Error", f"[red]{summary.error}[/red]")

    console.print()
    console.print(table)

    if summary.cancelled:
        console.print("\n[yellow bold]======== STOPPED ========[/yellow bold]")
    elif summary.success:
        console.print("\n[green bold]======== SUCCESS ========[/green bold]")
    else:
        console.print("\n[red bold]======== FAILED ========[/red bold]")


@click.group()
@click.version_option(version=None, package_name="kotlinrunner")
def main() -> None:
    """KotlinRunner - Run Kotlin scripts with live output."""
    pass


@main.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False))
@click.option("--kotlinc", "kotlinc_path", help="kotlinc executable (overrides config and KOTLINC_PATH)")
@click.option("--config", type=click.Path(exists=True), help="Path to config file")
@click.option("--json", "json_output", is_flag=True, help="Output the run summary as JSON")
@click.option("--context", is_flag=True, help="Show the script lines referenced by diagnostics")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(
    script: str,
    kotlinc_path: Optional[str],
    config: Optional[str],
    json_output: bool,
    context: bool,
    verbose: bool,
) -> None:
    """Run a Kotlin script, streaming its output. Ctrl-C stops it."""
    _setup_logging(verbose)

    try:
        runner_config = resolve_config(Path(config) if config else None)
        runner_config = runner_config.with_overrides(kotlinc_path=kotlinc_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        sys.exit(2)

    script_text = Path(script).read_text(encoding="utf-8")
    controller = RunController(runner_config)
    done = threading.Event()

    def on_line(text: str, is_error: bool) -> None:
        if not json_output:
            console.print(render_line(text, is_error), soft_wrap=True)

    def on_exit(exit_code: int) -> None:
        done.set()

    if verbose and not json_output:
        console.print(f"[dim]Config: {runner_config.config_path or 'environment defaults'}[/dim]")

    interrupted = False
    handle = controller.start_run(script_text, on_line=on_line, on_exit=on_exit)
    try:
        while not done.wait(0.1):
            pass
    except KeyboardInterrupt:
        interrupted = controller.stop_run(handle, note=TERMINATED_MESSAGE)
        if interrupted and not json_output:
            console.print(render_line(TERMINATED_MESSAGE, is_error=True), soft_wrap=True)

    controller.wait(runner_config.teardown_timeout)
    summary = controller.summary()

    if json_output:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        _display_summary(summary, script_text if context else None)

    if interrupted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(0 if summary.success else 1)


@main.command()
@click.argument("file", type=click.File("r"), default="-")
def locate(file) -> None:
    """List source locations found in diagnostic output (FILE or stdin)."""
    table = Table(title="Locations")
    table.add_column("Output Line", style="dim", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("Span", style="white")
    table.add_column("Line", justify="right")
    table.add_column("Column", justify="right")

    found = 0
    for number, raw in enumerate(file, start=1):
        for match in extract_locations(raw.rstrip("\r\n")):
            table.add_row(str(number), match.kind, match.span, str(match.line), str(match.column))
            found += 1

    if not found:
        console.print("[yellow]No locations found[/yellow]")
        return
    console.print(table)


@main.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False))
@click.argument("line", type=int)
@click.argument("column", type=int, default=1)
def offset(script: str, line: int, column: int) -> None:
    """Print the character offset of LINE:COLUMN in SCRIPT."""
    script_text = Path(script).read_text(encoding="utf-8")
    source, caret, char_offset = _context_lines(script_text, line, column)
    console.print(f"Offset: [cyan]{char_offset}[/cyan]")
    console.print(Text(source))
    console.print(Text(caret, style="bold red"))


@main.command()
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the sample to a file")
def sample(output: Optional[str]) -> None:
    """Print the bundled demo script."""
    if not output:
        click.echo(SAMPLE_SCRIPT, nl=False)
        return
    Path(output).write_text(SAMPLE_SCRIPT, encoding="utf-8")
    console.print(f"[green]Wrote sample script to {output}[/green]")
    console.print(f"Run it with: kotlinrunner run {output}")


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing config")
def init(force: bool) -> None:
    """Initialize kotlinrunner.yaml configuration file."""
    config_path = Path(CONFIG_FILENAME)

    if config_path.exists() and not force:
        console.print(f"[yellow]Warning:[/yellow] {config_path} already exists")
        console.print("Use --force to overwrite")
        sys.exit(1)

    try:
        defaults = RunnerConfig.from_env()
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(2)

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(defaults.to_yaml_dict(), f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nNext steps:")
    console.print(f"  1. Review and customize {CONFIG_FILENAME}")
    console.print("  2. Run 'kotlinrunner validate' to check configuration")
    console.print("  3. Run 'kotlinrunner sample -o demo.kts && kotlinrunner run demo.kts'")


@main.command()
@click.option("--config", type=click.Path(exists=True), help="Path to config file")
def validate(config: Optional[str]) -> None:
    """Validate the configuration file."""
    config_path = Path(config) if config else find_config_file()
    if not config_path:
        console.print(f"[red]Error:[/red] No {CONFIG_FILENAME} found")
        sys.exit(2)

    console.print(f"Validating [cyan]{config_path}[/cyan]...")

    try:
        runner_config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Validation failed:[/red] {e}")
        sys.exit(1)

    command = build_kotlinc_command(
        str(Path.cwd() / SCRIPT_FILENAME),
        kotlinc_path=runner_config.kotlinc_path,
        kotlin_home=runner_config.kotlin_home,
        fallback_lib_dir=runner_config.fallback_lib_dir,
    )

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("kotlinc", runner_config.kotlinc_path or "kotlinc (PATH)")
    table.add_row("KOTLIN_HOME", runner_config.kotlin_home or "-")
    table.add_row("Grace Interval", f"{runner_config.grace_interval}s")
    table.add_row("Poll Interval", f"{runner_config.poll_interval}s")
    table.add_row("Drain Timeout", f"{runner_config.drain_timeout}s")
    table.add_row("Teardown Timeout", f"{runner_config.teardown_timeout}s")
    table.add_row("Command", format_command(command))

    console.print(table)

    executable = runner_config.kotlinc_path or "kotlinc"
    if shutil.which(executable) is None:
        console.print(f"[yellow]Warning:[/yellow] {executable} not found; runs will fail to start")

    console.print("\n[green]Configuration is valid![/green]")


if __name__ == "__main__":
    main()
