"""
Tests for the pipeline CLI.

main() is exercised end to end against a queue snapshot in a temp
directory; run_command() is exercised against the fixture runner.
"""

import asyncio
import json
import os
import signal

import pytest

from src.pipeline import Collaborators, InMemoryLeadDatabase
from src.pipeline.cli import build_parser, main, run_command

from tests.pipeline.conftest import (
    FakeDeployer,
    FakeEmailSender,
    FakeFollowUpProcessor,
    FakeLeadFinder,
    FakeSiteInspector,
    FakeThemeGenerator,
)


def make_collaborators() -> Collaborators:
    """Factory referenced through PIPELINE_COLLABORATORS."""
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
def cli_env(monkeypatch, tmp_path):
    """Point the CLI at temp queue/log paths and the fake collaborators."""
    queue_path = tmp_path / "queue.json"
    monkeypatch.setenv("QUEUE_PERSIST_PATH", str(queue_path))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("GALLERY_ROOT", str(tmp_path / "themes"))
    monkeypatch.setenv("PIPELINE_COLLABORATORS", f"{__name__}:make_collaborators")
    return queue_path


# =============================================================================
# main()
# =============================================================================


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage: autowebsites" in capsys.readouterr().out

    def test_command_without_action(self, capsys):
        assert main(["queue"]) == 1

    def test_queue_stats_empty(self, cli_env, capsys):
        assert main(["queue", "stats"]) == 0
        assert "Total: 0" in capsys.readouterr().out

    def test_schedule_run_persists_jobs(self, cli_env, capsys):
        assert main(["schedule", "run", "plumbers in Austin TX"]) == 0
        assert "Done: 7 completed, 0 failed, 0 rescheduled" in capsys.readouterr().out

        records = json.loads(cli_env.read_text(encoding="utf-8"))
        assert sorted(r["type"] for r in records).count("generate") == 3

        # A second invocation sees the same queue state
        assert main(["queue", "stats"]) == 0
        assert "Total: 7" in capsys.readouterr().out

        assert main(["queue", "clear", "completed"]) == 0
        assert "Cleared 7 job(s)" in capsys.readouterr().out

    def test_pipeline_run_without_deploy(self, cli_env, capsys):
        assert main(["pipeline", "run", "https://a.test", "--no-deploy"]) == 0
        assert "Done: 1 completed" in capsys.readouterr().out

    def test_pipeline_run_failure_exit_code(self, cli_env, monkeypatch, capsys):
        monkeypatch.delenv("PIPELINE_COLLABORATORS")

        assert main(["pipeline", "run", "https://a.test"]) == 2
        out = capsys.readouterr().out
        assert "FAILED" in out
        assert "NOT_CONFIGURED" in out

    def test_invalid_clear_status(self, cli_env, capsys):
        assert main(["queue", "clear", "sleeping"]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_invalid_schedule_setting(self, cli_env, monkeypatch, capsys):
        monkeypatch.setenv("DISCOVERY_SCHEDULE", "whenever")

        assert main(["schedule", "status"]) == 1
        assert "DISCOVERY_SCHEDULE" in capsys.readouterr().err

    def test_schedule_status(self, cli_env, capsys):
        assert main(["schedule", "status"]) == 0
        out = capsys.readouterr().out
        assert "Running: False" in out
        assert '"auto_deploy": true' in out


# =============================================================================
# run_command()
# =============================================================================


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_queue_pending(self, runner, queue, capsys):
        job = queue.enqueue("email", {"lead_id": "lead-1"}, priority=3)
        args = build_parser().parse_args(["queue", "pending"])

        assert await run_command(runner, args) == 0

        out = capsys.readouterr().out
        assert "Pending Jobs (1)" in out
        assert job.id in out

    @pytest.mark.asyncio
    async def test_verbose_process_shows_retries(self, runner, queue, collaborators, capsys):
        collaborators.deployer = FakeDeployer(error="upstream returned 502")
        queue.enqueue("deploy", {"output_dir": "/tmp/site"})
        args = build_parser().parse_args(["-v", "queue", "process"])

        assert await run_command(runner, args) == 0

        out = capsys.readouterr().out
        assert "1 rescheduled" in out
        assert "RETRY" in out
        assert "DEPLOYMENT_FAILED" in out

    @pytest.mark.asyncio
    async def test_schedule_stop_without_scheduler(self, runner, capsys):
        args = build_parser().parse_args(["schedule", "stop"])

        assert await run_command(runner, args) == 1

        out = capsys.readouterr().out
        assert "No scheduler running in this process" in out
        assert "Scheduler stopped" not in out

    @pytest.mark.asyncio
    async def test_schedule_stop_in_process(self, runner, mock_clock, capsys):
        runner.configure(follow_up_schedule="1h")
        runner.start_scheduler()
        await mock_clock.settle()

        args = build_parser().parse_args(["schedule", "stop"])
        assert await run_command(runner, args) == 0

        assert "Scheduler stopped" in capsys.readouterr().out
        assert runner.get_runner_status().is_running is False
        assert not runner.queue.is_running

    @pytest.mark.asyncio
    async def test_schedule_start_until_signal(self, runner, mock_clock, capsys):
        args = build_parser().parse_args(["schedule", "start", "plumbers in Austin TX"])
        runner.configure(discovery_schedule="24h")

        task = asyncio.create_task(run_command(runner, args))
        await mock_clock.settle()
        assert runner.get_runner_status().is_running is True
        assert runner.config.discovery_queries == ("plumbers in Austin TX",)

        os.kill(os.getpid(), signal.SIGINT)
        assert await asyncio.wait_for(task, timeout=5) == 0

        assert runner.get_runner_status().is_running is False
        assert "sweep armed: discovery" in capsys.readouterr().out

    def test_parser_pipeline_flags(self):
        args = build_parser().parse_args(["pipeline", "run", "https://a.test", "--deploy", "--email"])
        assert (args.deploy, args.email) == (True, True)

        args = build_parser().parse_args(["pipeline", "run", "https://a.test"])
        assert (args.deploy, args.email) == (None, None)
