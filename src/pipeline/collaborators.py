"""
External collaborators used by the pipeline handlers.

The scheduler core knows these only by shape. Real implementations (lead
discovery, site capture, theme generation, deployment, email) live outside
this package and are plugged in through a Collaborators bundle, usually
built by a factory named in PIPELINE_COLLABORATORS ("package.module:factory").

Any collaborator left unset is replaced by a NotConfigured stub whose calls
raise JobError(NOT_CONFIGURED), which every default retry policy treats as
terminal.
"""

import importlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from src.scheduler.errors import ErrorCode, JobError


logger = logging.getLogger(__name__)


# =============================================================================
# Data Shapes
# =============================================================================

@dataclass
class Lead:
    """A business website the pipeline may redesign and pitch."""

    website_url: str
    id: Optional[str] = None
    business_name: Optional[str] = None
    email: Optional[str] = None
    status: str = "new"
    score: Optional[float] = None
    score_breakdown: Optional[dict] = None
    gallery_url: Optional[str] = None
    created_at: Optional[datetime] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "website_url": self.website_url,
            "business_name": self.business_name,
            "email": self.email,
            "status": self.status,
            "score": self.score,
            "score_breakdown": self.score_breakdown,
            "gallery_url": self.gallery_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class DeployResult:
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "url": self.url, "error": self.error}


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "message_id": self.message_id, "error": self.error}


# =============================================================================
# Protocols
# =============================================================================

class LeadFinder(Protocol):
    async def discover(self, query: str, max_results: int, score_threshold: float) -> list[Lead]:
        """Find candidate leads for a search query."""
        ...


class SiteInspector(Protocol):
    async def capture(self, url: str) -> dict:
        """Capture a website and return its manifest."""
        ...

    async def score(self, url: str) -> dict:
        """Score a website. The result contains at least "overall"."""
        ...


class ThemeGenerator(Protocol):
    async def generate(self, manifest: dict, output_dir: str) -> list[dict]:
        """Generate redesign themes and write the gallery to output_dir."""
        ...


class Deployer(Protocol):
    async def deploy(self, directory: str) -> DeployResult:
        """Publish a gallery directory and return its preview URL."""
        ...


class LeadDatabase(Protocol):
    async def get_lead(self, lead_id: str) -> Optional[Lead]: ...

    async def get_lead_by_url(self, url: str) -> Optional[Lead]: ...

    async def create_lead(self, lead: Lead) -> Lead: ...

    async def update_lead(self, lead_id: str, **fields) -> Optional[Lead]: ...

    async def save_leads(self, leads: list[Lead]) -> list[Lead]:
        """Persist discovered leads, skipping known URLs. Returns saved leads."""
        ...

    async def set_lead_score(self, lead_id: str, score: float, breakdown: Optional[dict] = None) -> None: ...

    async def set_gallery_url(self, lead_id: str, url: str) -> None: ...


class EmailSender(Protocol):
    async def send(self, lead: Lead, preview_url: Optional[str], score: Optional[float] = None) -> EmailResult:
        """Start the outreach sequence for a lead."""
        ...


class FollowUpProcessor(Protocol):
    async def process_pending_follow_ups(self) -> dict:
        """Send due follow-up emails. Returns counts."""
        ...


# =============================================================================
# Built-in Implementations
# =============================================================================

class InMemoryLeadDatabase:
    """Process-local LeadDatabase. Leads are keyed by id and unique by URL."""

    def __init__(self):
        self._leads: dict[str, Lead] = {}

    def __len__(self) -> int:
        return len(self._leads)

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        return self._leads.get(lead_id)

    async def get_lead_by_url(self, url: str) -> Optional[Lead]:
        normalized = _normalize_url(url)
        for lead in self._leads.values():
            if _normalize_url(lead.website_url) == normalized:
                return lead
        return None

    async def create_lead(self, lead: Lead) -> Lead:
        if lead.id is None:
            lead.id = f"lead-{uuid.uuid4().hex[:12]}"
        if lead.created_at is None:
            lead.created_at = datetime.now(timezone.utc)
        self._leads[lead.id] = lead
        return lead

    async def update_lead(self, lead_id: str, **fields) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        if lead is None:
            return None
        for name, value in fields.items():
            if not hasattr(lead, name):
                raise ValueError(f"Unknown lead field: {name}")
            setattr(lead, name, value)
        return lead

    async def save_leads(self, leads: list[Lead]) -> list[Lead]:
        saved = []
        for lead in leads:
            if await self.get_lead_by_url(lead.website_url) is not None:
                logger.debug(f"Skipping known lead {lead.website_url}")
                continue
            saved.append(await self.create_lead(lead))
        return saved

    async def set_lead_score(self, lead_id: str, score: float, breakdown: Optional[dict] = None) -> None:
        await self.update_lead(lead_id, score=score, score_breakdown=breakdown, status="scored")

    async def set_gallery_url(self, lead_id: str, url: str) -> None:
        await self.update_lead(lead_id, gallery_url=url, status="deployed")


def _normalize_url(url: str) -> str:
    return url.strip().lower().rstrip("/")


class NotConfigured:
    """
    Placeholder for a collaborator that was not supplied.

    Any async method call raises JobError(NOT_CONFIGURED).
    """

    def __init__(self, name: str):
        self.name = name

    def __getattr__(self, method: str):
        if method.startswith("__"):
            raise AttributeError(method)

        async def _not_configured(*args, **kwargs):
            raise JobError(
                ErrorCode.NOT_CONFIGURED,
                f"{self.name}.{method} has no implementation configured",
            )

        return _not_configured

    def __repr__(self) -> str:
        return f"NotConfigured({self.name!r})"


@dataclass
class Collaborators:
    """Bundle of collaborator implementations handed to the PipelineRunner."""

    lead_finder: Any = field(default_factory=lambda: NotConfigured("lead_finder"))
    site_inspector: Any = field(default_factory=lambda: NotConfigured("site_inspector"))
    theme_generator: Any = field(default_factory=lambda: NotConfigured("theme_generator"))
    deployer: Any = field(default_factory=lambda: NotConfigured("deployer"))
    lead_db: Any = field(default_factory=InMemoryLeadDatabase)
    email_sender: Any = field(default_factory=lambda: NotConfigured("email_sender"))
    follow_up_processor: Any = field(default_factory=lambda: NotConfigured("follow_up_processor"))

    def missing(self) -> list[str]:
        """Names of collaborators still backed by NotConfigured."""
        return [
            name for name, value in vars(self).items()
            if isinstance(value, NotConfigured)
        ]


def load_collaborators(factory_path: Optional[str]) -> Collaborators:
    """
    Build Collaborators from a "package.module:factory" path.

    The factory is called with no arguments and must return a Collaborators
    instance. With no path, every external collaborator is NotConfigured.

    Raises:
        ValueError: If the path is malformed or the factory returns the wrong type
        ImportError: If the module cannot be imported
    """
    if not factory_path:
        return Collaborators()

    module_name, sep, attr = factory_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"Collaborator factory must look like 'package.module:factory', got {factory_path!r}"
        )

    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from None

    collaborators = factory()
    if not isinstance(collaborators, Collaborators):
        raise ValueError(
            f"{factory_path} returned {type(collaborators).__name__}, expected Collaborators"
        )

    missing = collaborators.missing()
    if missing:
        logger.warning(f"Collaborators not configured: {', '.join(missing)}")
    return collaborators
