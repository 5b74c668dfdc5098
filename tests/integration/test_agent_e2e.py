"""
End-to-end tests: agent processes wired from data directories against one work queue

Each "agent" is the full component graph built by build_agent, with a
scripted page driver in place of the browser.
"""

import asyncio
import json

import pytest

from fakes import TOKEN_A, TOKEN_B, FakePageDriver, QueueServer, fast_settings, make_document
from scan_agent.cli import build_agent
from scan_agent.services.automation.page_driver import PageKind
from scan_agent.services.automation.scan_state_machine import Phase
from scan_agent.services.status_store import AgentStatusStore


def start_agent(server, data_dir, token=TOKEN_A, drivers=None, **settings_overrides):
    settings = fast_settings(api_token=token, **settings_overrides)
    drivers = drivers if drivers is not None else []

    def driver_factory():
        driver = drivers.pop(0) if drivers else FakePageDriver()
        return driver

    agent = build_agent(data_dir, settings, driver_factory, queue=server.client(token))
    agent.status.recover_stale_session()
    agent.credentials.set_password("instructor@example.edu", "s3cret")
    return agent


class TestTwoAgents:
    """Two agents racing for the same queue"""

    @pytest.mark.asyncio
    async def test_only_one_agent_claims_a_job(self, tmp_path):
        server = QueueServer([make_document("j1")])
        agent_a = start_agent(server, tmp_path / "a", TOKEN_A)
        agent_b = start_agent(server, tmp_path / "b", TOKEN_B)

        # Both see the job as pending before either claims it
        job_a = (await agent_a.queue.list_claimable())[0]
        job_b = (await agent_b.queue.list_claimable())[0]
        assert agent_a.service.start_session(job_a)
        assert agent_b.service.start_session(job_b)
        session_a, session_b = await asyncio.gather(agent_a.service.wait_idle(), agent_b.service.wait_idle())

        outcomes = sorted([session_a.phase, session_b.phase], key=lambda phase: phase.value)
        assert outcomes == [Phase.COMPLETED, Phase.IDLE]
        assert server.completions == {"j1": 1}
        assert len(server.calls("increment_attempt_count")) == 1
        assert server.documents["j1"]["attempt_count"] == 1

        loser = agent_b if session_b.phase == Phase.IDLE else agent_a
        loser_status = loser.status.snapshot()
        assert loser_status.processing_job_id is None
        assert loser_status.processed_count == 0
        assert loser_status.last_error is None

    @pytest.mark.asyncio
    async def test_schedulers_share_queue(self, tmp_path):
        server = QueueServer([
            make_document("j1", "one.pdf", uploaded_at="2026-01-01T00:00:00Z"),
            make_document("j2", "two.pdf", uploaded_at="2026-01-02T00:00:00Z"),
        ])
        agent_a = start_agent(server, tmp_path / "a", TOKEN_A)
        agent_b = start_agent(server, tmp_path / "b", TOKEN_B)

        for _ in range(4):
            await asyncio.gather(agent_a.scheduler.tick(), agent_b.scheduler.tick())
            await asyncio.gather(agent_a.service.wait_idle(), agent_b.service.wait_idle())

        assert server.completions == {"j1": 1, "j2": 1}
        processed = agent_a.status.snapshot().processed_count + agent_b.status.snapshot().processed_count
        assert processed == 2


class TestRestartAndRequeue:
    """Attempt counting and session recovery across agent processes"""

    @pytest.mark.asyncio
    async def test_attempts_grow_across_requeue(self, tmp_path):
        server = QueueServer([make_document("j1")])
        failing = FakePageDriver(page_kinds=[PageKind.UNKNOWN])
        agent = start_agent(server, tmp_path, drivers=[failing])

        await agent.scheduler.run_now()
        first = await agent.service.wait_idle()

        assert first.phase == Phase.FAILED
        assert first.job.attempts == 1
        assert server.documents["j1"]["automation_status"] == "failed"
        assert server.documents["j1"]["error_message"].startswith("NavigationTimeout")

        # Failed jobs stay failed until an operator re-queues them
        assert (await agent.scheduler.tick()).started is False

        server.requeue("j1")
        restarted = start_agent(server, tmp_path)
        await restarted.scheduler.run_now()
        second = await restarted.service.wait_idle()

        assert second.phase == Phase.COMPLETED
        assert second.job.attempts == 2
        assert server.documents["j1"]["attempt_count"] == 2

        history = restarted.ledger.load()
        assert list(history["outcome"]) == ["failed", "completed"]

    @pytest.mark.asyncio
    async def test_restart_discards_stale_session(self, tmp_path):
        server = QueueServer([make_document("j1")])
        crashed = start_agent(server, tmp_path)
        job = (await crashed.queue.list_claimable())[0]
        crashed.status.session_started(job)

        restarted = start_agent(server, tmp_path)

        assert restarted.status.snapshot().is_processing is False
        status_file = json.loads((tmp_path / "status.json").read_text())
        assert status_file["processing_job_id"] is None

    @pytest.mark.asyncio
    async def test_completion_reported_once(self, tmp_path):
        server = QueueServer([make_document("j1")])
        agent = start_agent(server, tmp_path)
        job = (await agent.queue.list_claimable())[0]
        await agent.queue.claim(job.id)

        await agent.service.reporter.report(job, FakePageDriver().scores, {})
        await agent.service.reporter.report(job, FakePageDriver().scores, {})

        assert len(server.calls("complete_document")) == 1
        assert server.completions == {"j1": 1}


class TestOperatorControl:
    """Operator commands from another process"""

    @pytest.mark.asyncio
    async def test_disable_from_other_process_stops_new_jobs(self, tmp_path):
        server = QueueServer([make_document("j1")])
        agent = start_agent(server, tmp_path)
        operator = AgentStatusStore(tmp_path / "status.json")

        operator.set_enabled(False)
        agent.status.phase_changed("idle")
        result = await agent.scheduler.tick()

        assert result.started is False
        assert result.message == "Agent is disabled"
        assert json.loads((tmp_path / "status.json").read_text())["enabled"] is False

    @pytest.mark.asyncio
    async def test_single_file_mode_latch(self, tmp_path):
        server = QueueServer([make_document("j1")])
        agent = start_agent(server, tmp_path, auto_process_next=False)

        await agent.scheduler.tick()
        await agent.service.wait_idle()
        server.add_document(make_document("j2", "next.pdf"))

        assert (await agent.scheduler.tick()).started is False
        assert (await agent.scheduler.run_now()).started is True
        await agent.service.wait_idle()
        assert server.documents["j2"]["automation_status"] == "completed"
