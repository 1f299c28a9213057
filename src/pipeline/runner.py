"""
Pipeline Runner.

Wires the seven job types to the external collaborators, chains pipeline
stages and drives the periodic sweeps.

Stage chaining (declared through HandlerResult.next_jobs):

    discover (p0) ──auto_deploy──> generate (p1) per saved lead
    generate      ──auto_deploy──> deploy (p2)
    deploy        ──success + auto_email──> email (p3)
    email, followup, capture, score: terminal

Ordering across stages comes only from these priority numbers; the queue
has no notion of dependencies.

Periodic sweeps (asyncio tasks sleeping on the injected clock):
- discovery: one discover job per configured query every discovery_schedule
- follow-up: one followup job (p5) every follow_up_schedule
"""

import asyncio
import logging
import re
from dataclasses import dataclass, fields, replace
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from src.infra.settings import Settings, parse_interval
from src.scheduler.alerting import AlertManager
from src.scheduler.clock import Clock
from src.scheduler.entities import (
    DrainResult,
    HandlerResult,
    Job,
    JobType,
    NextJob,
    QueueStats,
)
from src.scheduler.errors import ErrorCode, JobError
from src.scheduler.persistence import JsonQueueStore
from src.scheduler.queue_manager import JobQueue

from .collaborators import Collaborators, Lead, load_collaborators


logger = logging.getLogger(__name__)


DISCOVER_PRIORITY = 0
GENERATE_PRIORITY = 1
DEPLOY_PRIORITY = 2
EMAIL_PRIORITY = 3
FOLLOWUP_PRIORITY = 5


@dataclass(frozen=True)
class PipelineConfig:
    """Runner configuration. Replaced as a whole by PipelineRunner.configure()."""

    discovery_queries: tuple[str, ...] = ()
    leads_per_query: int = 10
    score_threshold: float = 6
    auto_deploy: bool = True
    auto_email: bool = False
    discovery_schedule: Optional[str] = None
    follow_up_schedule: Optional[str] = None
    max_leads_per_day: int = 50
    max_emails_per_day: int = 100
    gallery_root: Path = Path("data/themes")

    def __post_init__(self):
        # Lists are accepted from callers and settings; stored immutably
        object.__setattr__(self, "discovery_queries", tuple(self.discovery_queries))
        object.__setattr__(self, "gallery_root", Path(self.gallery_root))
        for name in ("discovery_schedule", "follow_up_schedule"):
            value = getattr(self, name)
            if value is not None:
                parse_interval(value)

    @property
    def discovery_interval(self) -> Optional[float]:
        return parse_interval(self.discovery_schedule) if self.discovery_schedule else None

    @property
    def follow_up_interval(self) -> Optional[float]:
        return parse_interval(self.follow_up_schedule) if self.follow_up_schedule else None

    def to_dict(self) -> dict:
        return {
            "discovery_queries": list(self.discovery_queries),
            "leads_per_query": self.leads_per_query,
            "score_threshold": self.score_threshold,
            "auto_deploy": self.auto_deploy,
            "auto_email": self.auto_email,
            "discovery_schedule": self.discovery_schedule,
            "follow_up_schedule": self.follow_up_schedule,
            "max_leads_per_day": self.max_leads_per_day,
            "max_emails_per_day": self.max_emails_per_day,
            "gallery_root": str(self.gallery_root),
        }


_CONFIG_FIELDS = frozenset(f.name for f in fields(PipelineConfig))


@dataclass
class RunnerStatus:
    config: PipelineConfig
    queue_stats: QueueStats
    is_running: bool

    def to_dict(self) -> dict:
        return {
            "config": self.config.to_dict(),
            "queue_stats": self.queue_stats.to_dict(),
            "is_running": self.is_running,
        }


@dataclass
class _DailyUsage:
    day: Optional[date] = None
    leads: int = 0
    emails: int = 0


class PipelineRunner:
    """
    Pipeline scheduler bound to one JobQueue.

    State machine: stopped → running (start_scheduler, sweeps armed)
    → stopped (stop_scheduler, sweeps cancelled).
    """

    def __init__(
        self,
        queue: JobQueue,
        collaborators: Optional[Collaborators] = None,
        config: Optional[PipelineConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize PipelineRunner.

        Args:
            queue: JobQueue the handlers are registered on
            collaborators: External collaborator bundle
            config: Initial configuration (defaults if omitted)
            clock: Time source for sweeps and daily limits (queue's clock by default)
        """
        self.queue = queue
        self.collaborators = collaborators or Collaborators()
        self.config = config or PipelineConfig()
        self.clock = clock or queue.clock

        self._sweeps: dict[str, asyncio.Task] = {}
        self._usage = _DailyUsage()

    @classmethod
    def create(
        cls,
        settings: Settings,
        collaborators: Optional[Collaborators] = None,
        clock: Optional[Clock] = None,
    ) -> "PipelineRunner":
        """
        Factory method to create a fully wired runner from settings.

        Queue snapshot store, alert manager and collaborators all come from
        the settings unless passed in. Handlers are registered.
        """
        store = (
            JsonQueueStore(settings.queue_persist_path)
            if settings.queue_persist_path else None
        )
        alerts = AlertManager.from_settings(settings, clock=clock)
        queue = JobQueue(
            clock=clock,
            alert_sink=alerts,
            workers=settings.queue_workers,
            poll_interval=settings.queue_poll_interval,
            rate_limit_per_minute=settings.queue_rate_limit_per_minute,
            store=store,
        )
        if collaborators is None:
            collaborators = load_collaborators(settings.collaborators_factory)

        runner = cls(
            queue,
            collaborators,
            PipelineConfig(**settings.pipeline_config()),
            clock=clock,
        )
        runner.register_handlers()
        return runner

    # =========================================================================
    # Configuration
    # =========================================================================

    def configure(self, config: Optional[Mapping[str, Any]] = None, **overrides) -> PipelineConfig:
        """
        Merge a partial configuration into the current one.

        Raises:
            ValueError: On unknown keys or malformed schedules
        """
        updates = dict(config or {})
        updates.update(overrides)

        unknown = set(updates) - _CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Unknown pipeline config keys: {', '.join(sorted(unknown))}")

        self.config = replace(self.config, **updates)
        logger.debug(f"Pipeline configured: {self.config.to_dict()}")
        return self.config

    # =========================================================================
    # Handlers
    # =========================================================================

    def register_handlers(self, queue: Optional[JobQueue] = None) -> None:
        """Bind every job type's handler. Re-registering overwrites."""
        queue = queue or self.queue
        queue.register_handler(JobType.DISCOVER, self.handle_discover)
        queue.register_handler(JobType.CAPTURE, self.handle_capture)
        queue.register_handler(JobType.SCORE, self.handle_score)
        queue.register_handler(JobType.GENERATE, self.handle_generate)
        queue.register_handler(JobType.DEPLOY, self.handle_deploy)
        queue.register_handler(JobType.EMAIL, self.handle_email)
        queue.register_handler(JobType.FOLLOWUP, self.handle_followup)

    async def handle_discover(self, payload: dict) -> HandlerResult:
        query = payload.get("query")
        if not query:
            raise JobError(ErrorCode.INVALID_QUERY, "discover job has no query")

        remaining = self._remaining_leads()
        if remaining <= 0:
            logger.warning(f"Daily lead limit reached, skipping discovery for {query!r}")
            return HandlerResult(result={
                "skipped": True,
                "reason": "daily lead limit reached",
                "leads_found": 0,
                "leads_saved": 0,
            })

        max_results = min(payload.get("max_results") or self.config.leads_per_query, remaining)
        score_threshold = payload.get("score_threshold") or self.config.score_threshold

        leads = await self.collaborators.lead_finder.discover(query, max_results, score_threshold)
        saved = await self.collaborators.lead_db.save_leads(leads)
        self._usage.leads += len(saved)

        next_jobs = []
        if self.config.auto_deploy:
            next_jobs = [
                NextJob(
                    JobType.GENERATE,
                    {"lead_id": lead.id, "url": lead.website_url},
                    priority=GENERATE_PRIORITY,
                )
                for lead in saved
            ]

        logger.info(f"Discovery {query!r}: {len(leads)} found, {len(saved)} saved")
        return HandlerResult(
            result={"leads_found": len(leads), "leads_saved": len(saved)},
            next_jobs=next_jobs,
        )

    async def handle_capture(self, payload: dict) -> HandlerResult:
        url = _require_url(payload)
        manifest = await self.collaborators.site_inspector.capture(url)
        return HandlerResult(result={"url": url, "manifest": manifest})

    async def handle_score(self, payload: dict) -> HandlerResult:
        url = _require_url(payload)
        lead_id = payload.get("lead_id")

        score = await self.collaborators.site_inspector.score(url)
        if "overall" not in score:
            raise JobError(ErrorCode.DATA_UNAVAILABLE, f"score for {url} has no overall value")

        if lead_id:
            await self.collaborators.lead_db.set_lead_score(lead_id, score["overall"], score)

        return HandlerResult(result={"score": score["overall"]})

    async def handle_generate(self, payload: dict) -> HandlerResult:
        url = _require_url(payload)
        lead_id = payload.get("lead_id")

        manifest = await self.collaborators.site_inspector.capture(url)
        output_dir = self.config.gallery_root / gallery_dir_name(url)
        themes = await self.collaborators.theme_generator.generate(manifest, str(output_dir))

        next_jobs = []
        if self.config.auto_deploy:
            next_jobs.append(NextJob(
                JobType.DEPLOY,
                {"lead_id": lead_id, "output_dir": str(output_dir)},
                priority=DEPLOY_PRIORITY,
            ))

        return HandlerResult(
            result={"themes_generated": len(themes), "output_dir": str(output_dir)},
            next_jobs=next_jobs,
        )

    async def handle_deploy(self, payload: dict) -> HandlerResult:
        output_dir = payload.get("output_dir")
        if not output_dir:
            raise JobError(ErrorCode.INVALID_INPUT, "deploy job has no output_dir")
        lead_id = payload.get("lead_id")

        deployed = await self.collaborators.deployer.deploy(output_dir)
        if not deployed.success:
            raise JobError.from_message(deployed.error, default_code=ErrorCode.DEPLOYMENT_FAILED)

        next_jobs = []
        if lead_id:
            await self.collaborators.lead_db.set_gallery_url(lead_id, deployed.url)
            if self.config.auto_email:
                next_jobs.append(NextJob(
                    JobType.EMAIL,
                    {"lead_id": lead_id, "preview_url": deployed.url},
                    priority=EMAIL_PRIORITY,
                ))

        return HandlerResult(result=deployed.to_dict(), next_jobs=next_jobs)

    async def handle_email(self, payload: dict) -> HandlerResult:
        lead_id = payload.get("lead_id")
        lead: Optional[Lead] = (
            await self.collaborators.lead_db.get_lead(lead_id) if lead_id else None
        )
        if lead is None:
            raise JobError(ErrorCode.INVALID_INPUT, f"Lead not found: {lead_id}")

        if self._remaining_emails() <= 0:
            # Capped for today: re-queue at the next UTC midnight
            run_at = _next_utc_midnight(self.clock.now())
            logger.info(
                f"Daily email limit reached, deferring email for lead {lead.id} "
                f"until {run_at.isoformat()}"
            )
            return HandlerResult(
                result={"deferred": True, "run_at": run_at.isoformat()},
                next_jobs=[NextJob(
                    JobType.EMAIL, dict(payload), priority=EMAIL_PRIORITY, run_at=run_at,
                )],
            )

        preview_url = payload.get("preview_url") or lead.gallery_url
        sent = await self.collaborators.email_sender.send(lead, preview_url, lead.score)
        if not sent.success:
            raise JobError.from_message(sent.error, default_code=ErrorCode.TEMPORARY_FAILURE)

        self._usage.emails += 1
        await self.collaborators.lead_db.update_lead(lead.id, status="contacted")
        return HandlerResult(result=sent.to_dict())

    async def handle_followup(self, payload: dict) -> HandlerResult:
        result = await self.collaborators.follow_up_processor.process_pending_follow_ups()
        return HandlerResult(result=result)

    # =========================================================================
    # Daily Limits
    # =========================================================================

    def _roll_day(self) -> None:
        today = self.clock.now().astimezone(timezone.utc).date()
        if self._usage.day != today:
            self._usage = _DailyUsage(day=today)

    def _remaining_leads(self) -> int:
        self._roll_day()
        return self.config.max_leads_per_day - self._usage.leads

    def _remaining_emails(self) -> int:
        self._roll_day()
        return self.config.max_emails_per_day - self._usage.emails

    # =========================================================================
    # Triggers
    # =========================================================================

    def run_discovery(self, queries: Optional[list[str]] = None) -> list[Job]:
        """Enqueue one discover job per query (configured queries by default)."""
        query_list = list(queries) if queries is not None else list(self.config.discovery_queries)
        logger.info(f"Queuing discovery for {len(query_list)} queries")
        return [
            self.queue.enqueue(JobType.DISCOVER, {"query": query}, priority=DISCOVER_PRIORITY)
            for query in query_list
        ]

    def enqueue_follow_up(self) -> Job:
        return self.queue.enqueue(JobType.FOLLOWUP, {}, priority=FOLLOWUP_PRIORITY)

    async def run_full_pipeline(
        self,
        url: str,
        deploy: Optional[bool] = None,
        email: Optional[bool] = None,
    ) -> DrainResult:
        """
        Run generate → deploy → email for one website and wait for it.

        deploy / email override auto_deploy / auto_email for this run only.
        """
        self.register_handlers()
        original = self.config

        overrides = {}
        if deploy is not None:
            overrides["auto_deploy"] = deploy
        if email is not None:
            overrides["auto_email"] = email

        try:
            self.configure(overrides)

            lead_db = self.collaborators.lead_db
            lead = await lead_db.get_lead_by_url(url)
            if lead is None:
                lead = await lead_db.create_lead(Lead(website_url=url))

            self.queue.enqueue(
                JobType.GENERATE,
                {"lead_id": lead.id, "url": url},
                priority=GENERATE_PRIORITY,
            )
            result = await self.queue.process_all()
        finally:
            self.config = original

        logger.info(
            f"Pipeline complete for {url}: {result.completed} completed, {result.failed} failed"
        )
        return result

    # =========================================================================
    # Scheduler
    # =========================================================================

    def start_scheduler(self) -> list[str]:
        """
        Start the queue loop and arm the configured sweeps.

        Calling again while running does not arm a sweep twice.

        Returns:
            Names of the sweeps armed by this call
        """
        self.register_handlers()
        self.queue.start()

        armed = []
        interval = self.config.discovery_interval
        if interval and self.config.discovery_queries and not self._sweep_active("discovery"):
            self._arm("discovery", interval, self._discovery_tick)
            armed.append("discovery")

        interval = self.config.follow_up_interval
        if interval and not self._sweep_active("follow_up"):
            self._arm("follow_up", interval, self._follow_up_tick)
            armed.append("follow_up")

        logger.info(f"Scheduler started (sweeps: {', '.join(self._sweeps) or 'none'})")
        return armed

    async def stop_scheduler(self, timeout: float = 30.0) -> None:
        """Cancel every sweep, then stop the queue. Safe when not running."""
        tasks = list(self._sweeps.values())
        self._sweeps.clear()

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.queue.stop(timeout=timeout)
        logger.info("Scheduler stopped")

    def get_runner_status(self) -> RunnerStatus:
        return RunnerStatus(
            config=self.config,
            queue_stats=self.queue.get_stats(),
            is_running=bool(self._sweeps),
        )

    async def check_health(self) -> list:
        """Run the alert sink's queue health checks, if it has any."""
        sink = self.queue.alert_sink
        if not isinstance(sink, AlertManager):
            return []
        alerts = await sink.check_queue_health(self.queue.get_stats())
        alerts += await sink.check_stuck_jobs(self.queue.list_jobs(status="running"))
        return alerts

    def _sweep_active(self, name: str) -> bool:
        task = self._sweeps.get(name)
        return task is not None and not task.done()

    def _arm(self, name: str, interval: float, tick) -> None:
        loop = asyncio.get_running_loop()
        # First run is due one interval after arming, not after the task starts
        first_due = self.clock.now() + timedelta(seconds=interval)
        self._sweeps[name] = loop.create_task(
            self._sweep_loop(name, interval, first_due, tick)
        )
        logger.info(f"Sweep '{name}' armed every {interval:.0f}s")

    async def _sweep_loop(self, name: str, interval: float, due: datetime, tick) -> None:
        while True:
            wait = (due - self.clock.now()).total_seconds()
            if wait > 0:
                await self.clock.sleep(wait)
            # Missed intervals are skipped rather than replayed back to back
            due = max(due, self.clock.now()) + timedelta(seconds=interval)
            logger.info(f"Scheduled {name} sweep triggered")
            try:
                await tick()
            except Exception as e:
                logger.error(f"Error in {name} sweep: {e}", exc_info=True)

    async def _discovery_tick(self) -> None:
        self.run_discovery()
        await self.check_health()

    async def _follow_up_tick(self) -> None:
        self.enqueue_follow_up()
        await self.check_health()


def _next_utc_midnight(now: datetime) -> datetime:
    tomorrow = now.astimezone(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)


def _require_url(payload: dict) -> str:
    url = payload.get("url")
    if not url or not urlparse(url).hostname:
        raise JobError(ErrorCode.INVALID_URL, f"invalid url: {url!r}")
    return url


def gallery_dir_name(url: str) -> str:
    """Filesystem-safe directory name from a URL's hostname."""
    hostname = urlparse(url).hostname or ""
    return re.sub(r"[^a-z0-9]", "_", hostname, flags=re.IGNORECASE)
