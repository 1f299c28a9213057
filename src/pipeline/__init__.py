"""
Lead pipeline: stage handlers, chaining and periodic sweeps on top of the
job scheduler core.
"""

from .collaborators import (
    Lead,
    DeployResult,
    EmailResult,
    Collaborators,
    InMemoryLeadDatabase,
    NotConfigured,
    load_collaborators,
)
from .runner import PipelineConfig, PipelineRunner, RunnerStatus

__all__ = [
    "Lead",
    "DeployResult",
    "EmailResult",
    "Collaborators",
    "InMemoryLeadDatabase",
    "NotConfigured",
    "load_collaborators",
    "PipelineConfig",
    "PipelineRunner",
    "RunnerStatus",
]
