"""
Environment configuration for the lead pipeline.

Values are read from the process environment; entry points call
python-dotenv's load_dotenv() first so a local .env file is honored.

Environment Variables:
- LOG_LEVEL: Logging level (default: INFO)
- LOG_DIR: Log file directory (default: logs)
- QUEUE_PERSIST_PATH: Queue snapshot file (default: data/queue.json, empty disables)
- QUEUE_WORKERS: Concurrent handlers (default: 1)
- QUEUE_POLL_INTERVAL: Seconds between background polls (default: 1.0)
- QUEUE_RATE_LIMIT_PER_MINUTE: Dispatch cap per minute (default: 30, 0 disables)
- DISCOVERY_QUERIES: ';'-separated discovery queries
- DISCOVERY_SCHEDULE: Discovery sweep interval, e.g. 24h (default: unset)
- FOLLOWUP_SCHEDULE: Follow-up sweep interval, e.g. 1h (default: unset)
- LEADS_PER_QUERY / SCORE_THRESHOLD
- PIPELINE_AUTO_DEPLOY (default: true) / PIPELINE_AUTO_EMAIL (default: false)
- MAX_LEADS_PER_DAY (default: 50) / MAX_EMAILS_PER_DAY (default: 100)
- GALLERY_ROOT: Theme gallery output directory (default: data/themes)
- PIPELINE_COLLABORATORS: "package.module:factory" returning Collaborators
- ALERT_WEBHOOK_URL / ALERT_WEBHOOK_SECRET / SLACK_WEBHOOK_URL / DISCORD_WEBHOOK_URL
- ALERT_MIN_SEVERITY: info | warning | critical (default: warning)
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

_INTERVAL_RE = re.compile(
    r"^\s*(?:(\d+)d)?\s*(?:(\d+)h)?\s*(?:(\d+)m)?\s*(?:(\d+)s)?\s*$",
    re.IGNORECASE,
)


# =============================================================================
# Environment Helpers
# =============================================================================

def _get_env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    val = os.getenv(key)
    if val is None:
        return default
    val = val.strip()
    return val if val else default


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    elif val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"Invalid integer for {key}: {val}, using default: {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            logger.warning(f"Invalid number for {key}: {val}, using default: {default}")
    return default


def _get_env_list(key: str, separator: str = ";") -> tuple[str, ...]:
    val = os.getenv(key, "")
    return tuple(item.strip() for item in val.split(separator) if item.strip())


def parse_interval(value: str) -> float:
    """
    Parse interval strings like '24h', '90m', '1h30m', '2d', '45s'.

    A bare number is taken as seconds.

    Returns:
        Interval in seconds

    Raises:
        ValueError: On empty, malformed, or zero intervals
    """
    if value is None or not str(value).strip():
        raise ValueError("interval string is empty")

    text = str(value).strip()
    try:
        seconds = float(text)
    except ValueError:
        match = _INTERVAL_RE.match(text)
        if not match or not any(match.groups()):
            raise ValueError(f"Invalid interval format: {value!r}") from None
        d, h, m, s = (int(g) if g else 0 for g in match.groups())
        seconds = float(d * 86400 + h * 3600 + m * 60 + s)

    if seconds <= 0:
        raise ValueError(f"interval must be > 0 seconds, got {value!r}")
    return seconds


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    log_dir: str = "logs"

    queue_persist_path: Optional[Path] = Path("data/queue.json")
    queue_workers: int = 1
    queue_poll_interval: float = 1.0
    queue_rate_limit_per_minute: Optional[int] = 30

    discovery_queries: tuple[str, ...] = ()
    discovery_schedule: Optional[str] = None
    follow_up_schedule: Optional[str] = None
    leads_per_query: int = 10
    score_threshold: float = 6
    auto_deploy: bool = True
    auto_email: bool = False
    max_leads_per_day: int = 50
    max_emails_per_day: int = 100
    gallery_root: Path = Path("data/themes")
    collaborators_factory: Optional[str] = None

    alert_webhook_url: Optional[str] = None
    alert_webhook_secret: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    alert_min_severity: str = "warning"

    def pipeline_config(self) -> dict:
        """Keyword arguments for PipelineConfig."""
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
            "gallery_root": self.gallery_root,
        }


def load_settings() -> Settings:
    """
    Build Settings from the current environment.

    Raises:
        ValueError: If a schedule or severity value is malformed
    """
    persist_path = os.getenv("QUEUE_PERSIST_PATH")
    if persist_path is None:
        queue_persist_path = Settings.queue_persist_path
    else:
        queue_persist_path = Path(persist_path) if persist_path.strip() else None

    rate_limit = _get_env_int("QUEUE_RATE_LIMIT_PER_MINUTE", 30)

    discovery_schedule = _get_env_str("DISCOVERY_SCHEDULE")
    follow_up_schedule = _get_env_str("FOLLOWUP_SCHEDULE")
    for key, schedule in (
        ("DISCOVERY_SCHEDULE", discovery_schedule),
        ("FOLLOWUP_SCHEDULE", follow_up_schedule),
    ):
        if schedule is not None:
            try:
                parse_interval(schedule)
            except ValueError as e:
                raise ValueError(f"{key}: {e}") from None

    min_severity = _get_env_str("ALERT_MIN_SEVERITY", "warning").lower()
    if min_severity not in ("info", "warning", "critical"):
        raise ValueError(f"ALERT_MIN_SEVERITY: unknown severity {min_severity!r}")

    return Settings(
        log_level=_get_env_str("LOG_LEVEL", "INFO").upper(),
        log_dir=_get_env_str("LOG_DIR", "logs"),
        queue_persist_path=queue_persist_path,
        queue_workers=max(1, _get_env_int("QUEUE_WORKERS", 1)),
        queue_poll_interval=_get_env_float("QUEUE_POLL_INTERVAL", 1.0),
        queue_rate_limit_per_minute=rate_limit if rate_limit > 0 else None,
        discovery_queries=_get_env_list("DISCOVERY_QUERIES"),
        discovery_schedule=discovery_schedule,
        follow_up_schedule=follow_up_schedule,
        leads_per_query=_get_env_int("LEADS_PER_QUERY", 10),
        score_threshold=_get_env_float("SCORE_THRESHOLD", 6),
        auto_deploy=_get_env_bool("PIPELINE_AUTO_DEPLOY", True),
        auto_email=_get_env_bool("PIPELINE_AUTO_EMAIL", False),
        max_leads_per_day=_get_env_int("MAX_LEADS_PER_DAY", 50),
        max_emails_per_day=_get_env_int("MAX_EMAILS_PER_DAY", 100),
        gallery_root=Path(_get_env_str("GALLERY_ROOT", "data/themes")),
        collaborators_factory=_get_env_str("PIPELINE_COLLABORATORS"),
        alert_webhook_url=_get_env_str("ALERT_WEBHOOK_URL"),
        alert_webhook_secret=_get_env_str("ALERT_WEBHOOK_SECRET"),
        slack_webhook_url=_get_env_str("SLACK_WEBHOOK_URL"),
        discord_webhook_url=_get_env_str("DISCORD_WEBHOOK_URL"),
        alert_min_severity=min_severity,
    )
