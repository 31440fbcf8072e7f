"""Phase runners, one per pipeline phase."""

from workflow_orchestrator.runners.base import PhaseResult, PhaseRunner, wrap_phase
from workflow_orchestrator.runners.building import BuildingRunner
from workflow_orchestrator.runners.configuration import ConfigurationRunner
from workflow_orchestrator.runners.discovery import DiscoveryRunner
from workflow_orchestrator.runners.documentation import DocumentationRunner
from workflow_orchestrator.runners.validation import ValidationRunner

__all__ = [
    "BuildingRunner",
    "ConfigurationRunner",
    "DiscoveryRunner",
    "DocumentationRunner",
    "PhaseResult",
    "PhaseRunner",
    "ValidationRunner",
    "wrap_phase",
]
