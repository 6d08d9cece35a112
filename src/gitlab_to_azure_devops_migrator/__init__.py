"""
GitLab to Azure DevOps Migration Tool

Migrates GitLab project repositories into Azure DevOps projects with
preflight validation, idempotent reconciliation of the destination
resources (project, repository, groups, branch policies, wiki) and
resumable batch runs.
"""

from __future__ import annotations

from .bulk import BulkCoordinator, load_descriptor
from .cli import main
from .exceptions import MigrationError
from .models import MigrationUnit, UnitStatus
from .orchestrator import CancellationToken, GovernancePlan, MigrationOrchestrator
from .preflight import PreflightValidator
from .reconciler import Reconciler
from .session import SessionContext
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "BulkCoordinator",
    "CancellationToken",
    "GovernancePlan",
    "MigrationError",
    "MigrationOrchestrator",
    "MigrationUnit",
    "PreflightValidator",
    "Reconciler",
    "SessionContext",
    "UnitStatus",
    "load_descriptor",
    "main",
    "setup_logging",
]
