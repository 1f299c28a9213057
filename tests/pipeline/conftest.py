"""
Pipeline Test Fixtures.

Fake collaborators that record their calls, and a PipelineRunner wired to
an in-memory queue on the mock clock.
"""

import random
from typing import Optional

import pytest

from src.pipeline import (
    Collaborators,
    DeployResult,
    EmailResult,
    InMemoryLeadDatabase,
    Lead,
    PipelineConfig,
    PipelineRunner,
)
from src.scheduler import JobQueue


class FakeLeadFinder:
    def __init__(self, urls: Optional[list[str]] = None):
        self.urls = urls if urls is not None else [
            "https://austin-plumbing.test",
            "https://drip-fixers.test",
            "https://pipe-pros.test",
        ]
        self.calls: list[tuple] = []

    async def discover(self, query, max_results, score_threshold):
        self.calls.append((query, max_results, score_threshold))
        return [Lead(website_url=url, business_name=url) for url in self.urls[:max_results]]


class FakeSiteInspector:
    def __init__(self, overall: Optional[float] = 4.5):
        self.overall = overall
        self.captured: list[str] = []

    async def capture(self, url):
        self.captured.append(url)
        return {"url": url, "sections": ["hero", "services"]}

    async def score(self, url):
        if self.overall is None:
            return {"design": 3}
        return {"overall": self.overall, "design": 3}


class FakeThemeGenerator:
    def __init__(self):
        self.output_dirs: list[str] = []

    async def generate(self, manifest, output_dir):
        self.output_dirs.append(output_dir)
        return [{"name": "modern"}, {"name": "classic"}]


class FakeDeployer:
    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.deployed: list[str] = []

    async def deploy(self, directory):
        self.deployed.append(directory)
        if self.error:
            return DeployResult(success=False, error=self.error)
        return DeployResult(success=True, url=f"https://preview.test/{len(self.deployed)}")


class FakeEmailSender:
    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.sent: list[tuple] = []

    async def send(self, lead, preview_url, score=None):
        if self.error:
            return EmailResult(success=False, error=self.error)
        self.sent.append((lead.id, preview_url))
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")


class FakeFollowUpProcessor:
    def __init__(self):
        self.runs = 0

    async def process_pending_follow_ups(self):
        self.runs += 1
        return {"processed": 2, "sent": 1}


@pytest.fixture
def collaborators() -> Collaborators:
    return Collaborators(
        lead_finder=FakeLeadFinder(),
        site_inspector=FakeSiteInspector(),
        theme_generator=FakeThemeGenerator(),
        deployer=FakeDeployer(),
        lead_db=InMemoryLeadDatabase(),
        email_sender=FakeEmailSender(),
        follow_up_processor=FakeFollowUpProcessor(),
    )


@pytest.fixture
def queue(mock_clock, alert_sink) -> JobQueue:
    return JobQueue(clock=mock_clock, alert_sink=alert_sink, rng=random.Random(99))


@pytest.fixture
def runner(queue, collaborators, mock_clock, tmp_path) -> PipelineRunner:
    """Runner with handlers registered and a temp gallery root."""
    runner = PipelineRunner(
        queue,
        collaborators,
        PipelineConfig(gallery_root=tmp_path / "themes"),
        clock=mock_clock,
    )
    runner.register_handlers()
    return runner
