"""
Unit tests for CLI functionality
"""

import json

import pytest
from rich.console import Console

from scan_agent.cli import CLIHandler, main
from scan_agent.config import ENV_API_TOKEN, ENV_API_URL, load_settings
from scan_agent.exceptions import ConfigurationError
from scan_agent.models.credentials import AuthMode
from scan_agent.models.job import Job, ResultSummary
from scan_agent.services.credential_store import CredentialStore
from scan_agent.services.persistence_service import ProcessingLedger
from scan_agent.services.status_store import LEASE_FILE_NAME, AgentLease, AgentStatusStore


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    monkeypatch.delenv(ENV_API_TOKEN, raising=False)
    monkeypatch.delenv(ENV_API_URL, raising=False)


@pytest.fixture
def console():
    return Console(record=True, width=200, force_terminal=False)


@pytest.fixture
def cli(console):
    return CLIHandler(console)


def run(cli, tmp_path, *argv):
    args = cli.create_argument_parser().parse_args(["--data-dir", str(tmp_path), *argv])
    return cli.dispatch(args)


class TestCLIHandler:
    """Test CLIHandler class"""

    def test_create_argument_parser(self, cli):
        """Test argument parser creation"""
        parser = cli.create_argument_parser()

        args = parser.parse_args(["--verbose", "history", "--limit", "5"])
        assert args.verbose is True
        assert args.command == "history"
        assert args.limit == 5

    def test_command_is_required(self, cli):
        with pytest.raises(SystemExit):
            cli.create_argument_parser().parse_args([])

    def test_configure_flags_default_to_unchanged(self, cli):
        """Boolean flags stay None unless given"""
        args = cli.create_argument_parser().parse_args(["configure", "--no-auto-process-next"])

        assert args.auto_process_next is False
        assert args.auto_launch is None
        assert args.target_folder is None

    def test_set_mode_choices(self, cli):
        parser = cli.create_argument_parser()

        assert parser.parse_args(["set-mode", "cookies"]).mode == "cookies"
        with pytest.raises(SystemExit):
            parser.parse_args(["set-mode", "oauth"])

    def test_validate_arguments_limit(self, cli):
        """Test argument validation"""
        args = cli.create_argument_parser().parse_args(["history", "--limit", "0"])

        with pytest.raises(ConfigurationError):
            cli.validate_arguments(args)

    def test_validate_arguments_missing_cookie_file(self, cli, tmp_path):
        args = cli.create_argument_parser().parse_args(["import-cookies", str(tmp_path / "missing.txt")])

        with pytest.raises(ConfigurationError) as exc_info:
            cli.validate_arguments(args)
        assert "Cookie file not found" in exc_info.value.message

    def test_validate_arguments_blank_username(self, cli):
        args = cli.create_argument_parser().parse_args(["set-credentials", "--username", "  ", "--password", "x"])

        with pytest.raises(ConfigurationError):
            cli.validate_arguments(args)


class TestOperatorCommands:
    """Commands that work on the data directory"""

    def test_status_of_fresh_agent(self, cli, console, tmp_path):
        assert run(cli, tmp_path, "status") == 0

        output = console.export_text()
        assert "Agent Status" in output
        assert "missing" in output
        assert "idle" in output

    def test_enable_disable(self, cli, tmp_path):
        run(cli, tmp_path, "disable")
        assert AgentStatusStore(tmp_path / "status.json").snapshot().enabled is False

        run(cli, tmp_path, "enable")
        assert AgentStatusStore(tmp_path / "status.json").snapshot().enabled is True

    def test_disable_keeps_live_session(self, cli, tmp_path):
        """Operator commands never clear the agent's session"""
        agent_status = AgentStatusStore(tmp_path / "status.json")
        agent_status.session_started(Job(id="j1", source_path="j1/a.pdf", display_name="a.pdf"))

        run(cli, tmp_path, "disable")

        data = json.loads((tmp_path / "status.json").read_text())
        assert data["enabled"] is False
        assert data["processing_job_id"] == "j1"

    def test_run_now_with_running_agent_posts_request(self, cli, console, tmp_path):
        """A second process never runs its own session beside the agent"""
        lease = AgentLease(tmp_path / LEASE_FILE_NAME)
        assert lease.acquire()
        try:
            assert run(cli, tmp_path, "run-now") == 0
        finally:
            lease.release()

        assert AgentStatusStore(tmp_path / "status.json").snapshot().run_requested_at is not None
        assert "Run requested" in console.export_text()

    def test_second_run_refused(self, cli, console, tmp_path):
        lease = AgentLease(tmp_path / LEASE_FILE_NAME)
        assert lease.acquire()
        try:
            assert run(cli, tmp_path, "run") == 1
        finally:
            lease.release()

        assert "Another agent is already running" in console.export_text()

    def test_status_shows_running_agent(self, cli, console, tmp_path):
        lease = AgentLease(tmp_path / LEASE_FILE_NAME)
        assert lease.acquire()
        try:
            run(cli, tmp_path, "status")
        finally:
            lease.release()

        assert "running" in console.export_text()
        assert "not running" not in console.export_text()

    def test_set_credentials(self, cli, tmp_path):
        assert run(cli, tmp_path, "set-credentials", "--username", "instructor", "--password", "pw") == 0

        store = CredentialStore(tmp_path / "credentials.json")
        assert store.mode == AuthMode.PASSWORD
        assert store.get_active().username == "instructor"

    def test_import_cookies(self, cli, console, tmp_path):
        cookie_file = tmp_path / "cookies.txt"
        cookie_file.write_text("session=abc\nlocale=en\n")

        assert run(cli, tmp_path, "import-cookies", str(cookie_file)) == 0

        store = CredentialStore(tmp_path / "credentials.json")
        assert store.mode == AuthMode.COOKIES
        assert len(store.get_active()) == 2
        assert store.get_active().entries[0].domain == ".nrtiedu.turnitin.com"
        assert "Imported 2 cookies" in console.export_text()

    def test_set_mode_without_credentials_warns(self, cli, console, tmp_path):
        run(cli, tmp_path, "set-mode", "cookies")

        assert "No cookies credentials stored yet" in console.export_text()
        assert CredentialStore(tmp_path / "credentials.json").mode == AuthMode.COOKIES

    def test_set_token_without_verification(self, cli, tmp_path):
        assert run(cli, tmp_path, "set-token", "ext_abc", "--no-verify") == 0

        assert load_settings(tmp_path, environ={}).api_token == "ext_abc"

    def test_set_token_rejects_bad_format(self, cli, tmp_path):
        with pytest.raises(ConfigurationError):
            run(cli, tmp_path, "set-token", "abc", "--no-verify")

    def test_set_token_verification_needs_api_url(self, cli, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            run(cli, tmp_path, "set-token", "ext_abc")
        assert exc_info.value.setting == "api_url"

    def test_configure(self, cli, console, tmp_path):
        run(cli, tmp_path, "configure", "--folder", "Chem 1", "--no-auto-process-next",
            "--poll-interval", "15", "--api-url", "https://queue.test/api")

        settings = load_settings(tmp_path, environ={})
        assert settings.target_folder == "Chem 1"
        assert settings.auto_process_next is False
        assert settings.poll_interval_seconds == 15
        assert settings.auto_launch is True
        assert "Updated" in console.export_text()

    def test_configure_rejects_invalid_values(self, cli, tmp_path):
        with pytest.raises(ConfigurationError):
            run(cli, tmp_path, "configure", "--poll-interval", "0.5")

    def test_configure_hides_token(self, cli, console, tmp_path):
        run(cli, tmp_path, "set-token", "ext_secret", "--no-verify")
        run(cli, tmp_path, "configure")

        output = console.export_text()
        assert "ext_secret" not in output
        assert "***" in output

    def test_history(self, cli, console, tmp_path):
        ledger = ProcessingLedger(tmp_path / "history.csv")
        job = Job(id="j1", source_path="j1/essay.docx", display_name="essay.docx")
        ledger.record(job, "completed", 10.0, ResultSummary(similarity_percentage=12, ai_percentage=4))
        ledger.record(job, "failed", 5.0, message="NavigationTimeout: gave up")

        assert run(cli, tmp_path, "history") == 0

        output = console.export_text()
        assert "essay.docx" in output
        assert "12%" in output
        assert "NavigationTimeout" in output
        assert "Total: 2  Completed: 1  Failed: 1" in output

    def test_empty_history(self, cli, console, tmp_path):
        assert run(cli, tmp_path, "history") == 0
        assert "Total: 0" in console.export_text()


class TestMain:
    """Exit codes of the entry point"""

    def test_success_exit_code(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", str(tmp_path), "disable"])
        assert exc_info.value.code == 0

    def test_agent_error_exit_code(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", str(tmp_path), "set-token", "bad", "--no-verify"])
        assert exc_info.value.code == 2

    def test_corrupt_settings_exit_code(self, tmp_path):
        (tmp_path / "settings.json").write_text("{oops")

        with pytest.raises(SystemExit) as exc_info:
            main(["--data-dir", str(tmp_path), "status"])
        assert exc_info.value.code == 2
