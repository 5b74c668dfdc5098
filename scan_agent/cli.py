"""
Command line interface module

Operator surface for the scan agent: run the polling loop, trigger a job,
inspect status and history, and manage the token, credentials and settings.
Every command works on the files of one data directory, so operator commands
can run beside a live agent process.
"""

import argparse
import asyncio
import getpass
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import (
    DEFAULT_DATA_DIR, AgentSettings, load_settings, save_settings, validate_api_token
)
from .exceptions import AutomationError, ConfigurationError
from .models.credentials import AuthMode
from .services.automation.automation_service import AutomationService
from .services.automation.scan_state_machine import AutomationSession, Phase
from .services.credential_store import CredentialStore
from .services.persistence_service import ProcessingLedger
from .services.scheduler import SchedulerLoop
from .services.status_store import LEASE_FILE_NAME, AgentLease, AgentStatusStore
from .services.work_queue import WorkQueueClient


def setup_logging(verbose: bool = False, console: Optional[Console] = None):
    """Route logging through rich; --verbose lowers the level to DEBUG"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # Keep third-party chatter out of the operator log
    for name in ("httpx", "httpcore", "transitions"):
        logging.getLogger(name).setLevel(logging.WARNING)


@dataclass
class AgentComponents:
    """Everything one agent process needs, wired to a single data directory"""
    settings: AgentSettings
    queue: WorkQueueClient
    credentials: CredentialStore
    status: AgentStatusStore
    ledger: ProcessingLedger
    service: AutomationService
    scheduler: SchedulerLoop


def build_agent(data_dir: Path, settings: AgentSettings, driver_factory=None,
                queue: Optional[WorkQueueClient] = None) -> AgentComponents:
    """Wire the agent's services together"""
    if driver_factory is None:
        from .services.automation.playwright_driver import PlaywrightPageDriver

        def driver_factory():
            return PlaywrightPageDriver(headless=settings.headless)

    queue = queue or WorkQueueClient(settings.api_url, settings.api_token)
    credentials = CredentialStore(data_dir / "credentials.json", settings.cookie_domain)
    status = AgentStatusStore(data_dir / "status.json")
    ledger = ProcessingLedger(data_dir / "history.csv")
    service = AutomationService(settings, queue, credentials, status, driver_factory, ledger)
    scheduler = SchedulerLoop(service, queue, credentials, status, settings)
    return AgentComponents(settings, queue, credentials, status, ledger, service, scheduler)


class CLIHandler:
    """CLI Handler Class"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def create_argument_parser(self) -> argparse.ArgumentParser:
        """Create command line argument parser"""
        parser = argparse.ArgumentParser(
            description="Scan Agent - processes queued documents through the host system",
            prog="scan-agent",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )
        parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
        parser.add_argument(
            "--data-dir",
            type=Path,
            default=DEFAULT_DATA_DIR,
            help=f"Directory holding settings, credentials, status and history (default: {DEFAULT_DATA_DIR})"
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Enable verbose logging output"
        )

        commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

        commands.add_parser("run", help="Run the polling loop until interrupted")
        commands.add_parser("run-now", help="Process the oldest pending job now and exit")
        commands.add_parser("status", help="Show agent status")
        commands.add_parser("enable", help="Allow the agent to start new jobs")
        commands.add_parser("disable", help="Stop the agent from starting new jobs")

        creds = commands.add_parser("set-credentials", help="Store host username/password and use password login")
        creds.add_argument("--username", required=True, help="Host account username")
        creds.add_argument("--password", help="Host account password (prompted when omitted)")

        cookies = commands.add_parser("import-cookies", help="Import a cookie export and use cookie login")
        cookies.add_argument("file", type=Path, help="JSON, Netscape cookies.txt or name=value file")

        mode = commands.add_parser("set-mode", help="Switch the active authentication mode")
        mode.add_argument("mode", choices=[m.value for m in AuthMode])

        token = commands.add_parser("set-token", help="Save the work queue token")
        token.add_argument("token", help='Token issued by the work queue (starts with "ext_")')
        token.add_argument("--no-verify", action="store_true", help="Skip the heartbeat check")

        configure = commands.add_parser("configure", help="Change agent settings")
        configure.add_argument("--api-url", help="Work queue endpoint")
        configure.add_argument("--host-url", help="Host system login URL")
        configure.add_argument("--folder", dest="target_folder", help="Folder to upload into")
        configure.add_argument("--poll-interval", dest="poll_interval_seconds", type=float,
                               help="Seconds between queue polls (minimum 1)")
        configure.add_argument("--auto-launch", action=argparse.BooleanOptionalAction, default=None,
                               help="Click the launch prompt automatically")
        configure.add_argument("--require-ai-report", dest="require_secondary_report",
                               action=argparse.BooleanOptionalAction, default=None,
                               help="Download the AI report for full scans")
        configure.add_argument("--auto-process-next", action=argparse.BooleanOptionalAction, default=None,
                               help="Keep polling after a job completes (off: wait for run-now)")
        configure.add_argument("--headless", action=argparse.BooleanOptionalAction, default=None,
                               help="Run the browser without a window")

        history = commands.add_parser("history", help="Show recently processed jobs")
        history.add_argument("--limit", type=int, default=10, help="Number of rows to show (default: 10)")

        return parser

    def validate_arguments(self, args: argparse.Namespace):
        """Reject arguments argparse cannot check on its own"""
        if args.command == "history" and args.limit < 1:
            raise ConfigurationError("--limit must be at least 1", "limit")
        if args.command == "import-cookies" and not args.file.is_file():
            raise ConfigurationError(f"Cookie file not found: {args.file}", "file")
        if args.command == "set-credentials" and not args.username.strip():
            raise ConfigurationError("Username cannot be empty", "username")

    # =================== Commands ===================

    async def cmd_run(self, args) -> int:
        lease = AgentLease(args.data_dir / LEASE_FILE_NAME)
        if not lease.acquire():
            self.console.print("[red]Another agent is already running on this data directory[/red]")
            return 1

        try:
            settings = load_settings(args.data_dir)
            agent = build_agent(args.data_dir, settings)
            agent.status.recover_stale_session()
            self._attach_session_output(agent.service)

            self.console.print(Panel(
                f"Work queue: {settings.api_url or '[red]not configured[/red]'}\n"
                f"Host: {settings.host_url}\n"
                f"Folder: {settings.target_folder}\n"
                f"Polling every {agent.scheduler.interval:g}s. Press Ctrl+C to stop.",
                title="Scan Agent",
                border_style="blue"
            ))

            agent.scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                await agent.scheduler.stop()
                if agent.service.is_processing:
                    self.console.print("[yellow]Waiting for the current job to finish...[/yellow]")
                await agent.service.shutdown()
                await agent.queue.close()
        finally:
            lease.release()
        return 0

    async def cmd_run_now(self, args) -> int:
        lease = AgentLease(args.data_dir / LEASE_FILE_NAME)
        if not lease.acquire():
            # The running agent owns the session slot and the single-file latch
            AgentStatusStore(args.data_dir / "status.json").request_run()
            self.console.print("[blue]Run requested; the running agent picks it up on its next poll[/blue]")
            return 0

        try:
            settings = load_settings(args.data_dir)
            agent = build_agent(args.data_dir, settings)
            agent.status.recover_stale_session()
            self._attach_session_output(agent.service)
            try:
                result = await agent.scheduler.run_now()
                if not result.started:
                    self.console.print(f"[yellow]{result.message}[/yellow]")
                    return 1

                self.console.print(f"[blue]{result.message}[/blue]")
                session = await agent.service.wait_idle()
            finally:
                await agent.queue.close()
        finally:
            lease.release()

        return 0 if session and session.phase == Phase.COMPLETED else 1

    def cmd_status(self, args) -> int:
        settings = load_settings(args.data_dir)
        status = AgentStatusStore(args.data_dir / "status.json").snapshot()
        credentials = CredentialStore(args.data_dir / "credentials.json", settings.cookie_domain)

        table = Table(title="Agent Status", box=box.ROUNDED, show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("Enabled", "[green]yes[/green]" if status.enabled else "[red]no[/red]")
        running = AgentLease(args.data_dir / LEASE_FILE_NAME).held_elsewhere()
        table.add_row("Agent process", "[green]running[/green]" if running else "not running")
        table.add_row("Processing", status.processing_job_name or "-")
        table.add_row("Phase", status.current_phase)
        if status.run_requested_at:
            table.add_row("Run requested", status.run_requested_at)
        table.add_row("Processed", str(status.processed_count))
        table.add_row("Last processed", status.last_processed_at or "-")
        table.add_row("Last error", f"[red]{status.last_error}[/red]" if status.last_error else "-")
        table.add_row("Last error at", status.last_error_at or "-")
        table.add_row("Work queue token", "configured" if settings.api_token else "[red]missing[/red]")
        table.add_row("Auth mode", credentials.mode.value)
        table.add_row("Credentials", "configured" if credentials.has_credentials() else "[red]missing[/red]")
        table.add_row("Single-file mode", "off" if settings.auto_process_next else "on")
        self.console.print(table)
        return 0

    def cmd_set_enabled(self, args, enabled: bool) -> int:
        store = AgentStatusStore(args.data_dir / "status.json")
        store.set_enabled(enabled)
        self.console.print(f"Agent {'enabled' if enabled else 'disabled'}")
        return 0

    def cmd_set_credentials(self, args) -> int:
        settings = load_settings(args.data_dir)
        password = args.password or getpass.getpass("Host password: ")
        store = CredentialStore(args.data_dir / "credentials.json", settings.cookie_domain)
        try:
            store.set_password(args.username, password)
        except ValueError as e:
            raise ConfigurationError(str(e), "credentials")
        self.console.print(f"[green]Saved credentials for {args.username}; password login active[/green]")
        return 0

    def cmd_import_cookies(self, args) -> int:
        settings = load_settings(args.data_dir)
        store = CredentialStore(args.data_dir / "credentials.json", settings.cookie_domain)
        jar = store.import_cookie_text(args.file.read_text(encoding="utf-8"))

        expired = jar.expired_count()
        self.console.print(f"[green]Imported {len(jar)} cookies; cookie login active[/green]")
        if expired:
            self.console.print(f"[yellow]{expired} cookies are already expired[/yellow]")
        return 0

    def cmd_set_mode(self, args) -> int:
        settings = load_settings(args.data_dir)
        store = CredentialStore(args.data_dir / "credentials.json", settings.cookie_domain)
        store.set_mode(AuthMode(args.mode))
        if not store.has_credentials():
            self.console.print(f"[yellow]No {args.mode} credentials stored yet[/yellow]")
        self.console.print(f"Authentication mode: {args.mode}")
        return 0

    async def cmd_set_token(self, args) -> int:
        token = validate_api_token(args.token)
        settings = load_settings(args.data_dir)

        if not args.no_verify:
            if not settings.api_url:
                raise ConfigurationError("Set the work queue URL first (configure --api-url)", "api_url")
            queue = WorkQueueClient(settings.api_url, token)
            try:
                await queue.heartbeat()
            finally:
                await queue.close()

        settings.api_token = token
        save_settings(settings, args.data_dir)
        self.console.print("[green]Work queue token saved[/green]")
        return 0

    def cmd_configure(self, args) -> int:
        settings = load_settings(args.data_dir)
        changed = []
        for name in ("api_url", "host_url", "target_folder", "poll_interval_seconds", "auto_launch",
                     "require_secondary_report", "auto_process_next", "headless"):
            value = getattr(args, name)
            if value is not None:
                setattr(settings, name, value)
                changed.append(name)

        path = save_settings(settings, args.data_dir)
        if changed:
            self.console.print(f"Updated {', '.join(changed)} in {path}")

        table = Table(title="Settings", box=box.ROUNDED, show_header=False)
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        for key, value in settings.to_dict().items():
            if key == "api_token":
                value = "***" if value else None
            if key != "timeouts":
                table.add_row(key, str(value))
        self.console.print(table)
        return 0

    def cmd_history(self, args) -> int:
        ledger = ProcessingLedger(args.data_dir / "history.csv")
        summary = ledger.summary()
        rows = ledger.recent(args.limit)

        table = Table(title="Processing History", box=box.ROUNDED)
        for column in ("Time", "File", "Outcome", "Similarity", "AI", "Message"):
            table.add_column(column)
        for _, row in rows.iterrows():
            outcome = row["outcome"]
            style = "green" if outcome == "completed" else "red"
            table.add_row(
                str(row["timestamp"])[:19],
                str(row["file_name"]),
                f"[{style}]{outcome}[/{style}]",
                self._percent(row["similarity_percentage"]),
                self._percent(row["ai_percentage"]),
                "" if str(row["message"]) == "nan" else str(row["message"]),
            )
        self.console.print(table)
        self.console.print(
            f"Total: {summary['total']}  Completed: {summary['completed']}  Failed: {summary['failed']}"
        )
        return 0

    # =================== Helpers ===================

    @staticmethod
    def _percent(value) -> str:
        if value is None or str(value) == "nan":
            return "-"
        return f"{int(float(value))}%"

    def _attach_session_output(self, service: AutomationService):
        def on_session_start(job):
            self.console.print(f"[blue]Processing {job.display_name}[/blue]")

        def on_session_complete(session: AutomationSession):
            if session.phase == Phase.COMPLETED:
                summary = session.summary
                self.console.print(
                    f"[green]Completed {session.job.display_name}: "
                    f"similarity {summary.similarity_percentage}%[/green]"
                )
            elif session.phase == Phase.FAILED:
                self.console.print(f"[red]Failed {session.job.display_name}: {session.failure}[/red]")
            else:
                self.console.print(f"[yellow]Skipped {session.job.display_name}: {session.last_error or 'claimed elsewhere'}[/yellow]")

        service.set_callbacks(on_session_start=on_session_start, on_session_complete=on_session_complete)

    async def _dispatch_async(self, args) -> int:
        if args.command == "run":
            return await self.cmd_run(args)
        if args.command == "run-now":
            return await self.cmd_run_now(args)
        return await self.cmd_set_token(args)

    def dispatch(self, args: argparse.Namespace) -> int:
        """Run one parsed command and return the exit code"""
        self.validate_arguments(args)

        sync_commands = {
            "status": self.cmd_status,
            "enable": lambda a: self.cmd_set_enabled(a, True),
            "disable": lambda a: self.cmd_set_enabled(a, False),
            "set-credentials": self.cmd_set_credentials,
            "import-cookies": self.cmd_import_cookies,
            "set-mode": self.cmd_set_mode,
            "configure": self.cmd_configure,
            "history": self.cmd_history,
        }
        if args.command in sync_commands:
            return sync_commands[args.command](args)
        return asyncio.run(self._dispatch_async(args))


def main(argv=None):
    """CLI main entry point"""
    cli_handler = CLIHandler()
    parser = cli_handler.create_argument_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, cli_handler.console)

    try:
        sys.exit(cli_handler.dispatch(args))
    except KeyboardInterrupt:
        cli_handler.console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)
    except AutomationError as e:
        cli_handler.console.print(f"[red]Error:[/red] {e}")
        sys.exit(2)
    except Exception as e:
        cli_handler.console.print(f"[red]Unexpected error:[/red] {e}")
        if args.verbose:
            cli_handler.console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
