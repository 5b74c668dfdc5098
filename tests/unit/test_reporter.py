"""
Unit tests for result reporting
"""

import httpx
import pytest

from fakes import make_document
from scan_agent.exceptions import ReportingError
from scan_agent.models.job import ArtifactKind, Job, ResultScores, ScanKind
from scan_agent.services.automation.reporter import ResultReporter, artifact_path

ARTIFACTS = {
    ArtifactKind.SIMILARITY_REPORT: b"%PDF-similarity",
    ArtifactKind.AI_REPORT: b"%PDF-ai",
}


@pytest.fixture
def job():
    return Job(id="j1", source_path="j1/essay.docx", display_name="essay.docx")


@pytest.fixture
def reporter(queue):
    return ResultReporter(queue, max_attempts=3, backoff_seconds=0)


class TestArtifactPath:
    """Storage layout of result artifacts"""

    def test_paths(self):
        assert artifact_path("j1", ArtifactKind.SIMILARITY_REPORT) == "j1/similarity_report.pdf"
        assert artifact_path("j1", ArtifactKind.AI_REPORT) == "j1/ai_report.pdf"


class TestReport:
    """Upload and completion"""

    @pytest.mark.asyncio
    async def test_full_report(self, server, reporter, job):
        summary = await reporter.report(job, ResultScores(12, 4, True), ARTIFACTS)

        assert summary.similarity_percentage == 12
        assert summary.ai_percentage == 4
        assert summary.similarity_report_path == "j1/similarity_report.pdf"
        assert summary.ai_report_path == "j1/ai_report.pdf"
        assert summary.score_only is False
        assert server.reports["j1/ai_report.pdf"] == b"%PDF-ai"
        assert server.documents["j1"]["ai_report_path"] == "j1/ai_report.pdf"
        assert server.completions["j1"] == 1

    @pytest.mark.asyncio
    async def test_score_only(self, server, reporter, job):
        summary = await reporter.report(job, ResultScores(12, 4, True), {})

        assert summary.score_only is True
        assert summary.similarity_report_path is None
        assert server.calls("upload_report") == []
        assert server.documents["j1"]["similarity_percentage"] == 12

    @pytest.mark.asyncio
    async def test_similarity_only_job_drops_ai_score(self, server, reporter):
        job = Job(id="j1", source_path="j1/essay.docx", display_name="essay.docx",
                  scan_kind=ScanKind.SIMILARITY_ONLY)

        summary = await reporter.report(job, ResultScores(12, 4, True),
                                        {ArtifactKind.SIMILARITY_REPORT: b"pdf"})

        assert summary.ai_percentage is None
        assert "aiPercentage" not in server.calls("complete_document")[0]

    @pytest.mark.asyncio
    async def test_reporting_is_idempotent(self, server, reporter, job):
        first = await reporter.report(job, ResultScores(12, 4, True), ARTIFACTS)
        second = await reporter.report(job, ResultScores(99, 99, True), ARTIFACTS)

        assert second is first
        assert reporter.already_reported("j1") is True
        assert len(server.calls("complete_document")) == 1
        assert len(server.calls("upload_report")) == 2

    @pytest.mark.asyncio
    async def test_reported_cache_is_bounded(self, server, queue):
        reporter = ResultReporter(queue, backoff_seconds=0, cache_size=2)
        for doc_id in ("j2", "j3"):
            server.add_document(make_document(doc_id))

        for doc_id in ("j1", "j2", "j3"):
            job = Job(id=doc_id, source_path=f"{doc_id}/essay.docx", display_name="essay.docx")
            await reporter.report(job, ResultScores(12, 4, True))

        assert reporter.already_reported("j1") is False
        assert reporter.already_reported("j2") is True
        assert reporter.already_reported("j3") is True


class TestRetries:
    """Backoff on transport errors only"""

    @pytest.mark.asyncio
    async def test_transient_network_errors_are_retried(self, server, reporter, job):
        server.fail_next("complete_document", httpx.ConnectError("down"), httpx.ReadTimeout("slow"))

        summary = await reporter.report(job, ResultScores(12, 4, True), {})

        assert summary.similarity_percentage == 12
        assert len(server.calls("complete_document")) == 3
        assert server.completions["j1"] == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, server, reporter, job):
        server.fail_next("upload_report", *[httpx.ConnectError("down")] * 3)

        with pytest.raises(ReportingError) as exc_info:
            await reporter.report(job, ResultScores(12, 4, True), ARTIFACTS)

        assert exc_info.value.attempts == 3
        assert exc_info.value.job_id == "j1"
        assert server.calls("complete_document") == []
        assert reporter.already_reported("j1") is False

    @pytest.mark.asyncio
    async def test_api_error_is_not_retried(self, server, reporter, job):
        server.fail_next("complete_document", 500)

        with pytest.raises(ReportingError) as exc_info:
            await reporter.report(job, ResultScores(12, 4, True), {})

        assert exc_info.value.attempts == 1
        assert "500" in str(exc_info.value)
        assert len(server.calls("complete_document")) == 1

    @pytest.mark.asyncio
    async def test_report_after_failure_can_succeed(self, server, reporter, job):
        server.fail_next("complete_document", 500)
        with pytest.raises(ReportingError):
            await reporter.report(job, ResultScores(12, 4, True), {})

        summary = await reporter.report(job, ResultScores(12, 4, True), {})

        assert summary.score_only is True
        assert server.completions["j1"] == 1
