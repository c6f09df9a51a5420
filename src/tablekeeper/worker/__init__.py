"""Provisioning worker: locking, status tracking, provisioning and scheduling."""

from tablekeeper.worker.fetcher import FastResourceStatusFetcher, QuickStatus
from tablekeeper.worker.lock import LockManager
from tablekeeper.worker.orchestrator import CycleOutcome, Orchestrator, OrchestratorState, WorkerMode
from tablekeeper.worker.provisioner import ProvisionerTimings, ResourceProvisioner
from tablekeeper.worker.refresher import LightweightStatusRefresher
from tablekeeper.worker.service import InfrastructureService, create_service
from tablekeeper.worker.status import StatusManager

__all__ = [
    "CycleOutcome",
    "FastResourceStatusFetcher",
    "InfrastructureService",
    "LightweightStatusRefresher",
    "LockManager",
    "Orchestrator",
    "OrchestratorState",
    "ProvisionerTimings",
    "QuickStatus",
    "ResourceProvisioner",
    "StatusManager",
    "WorkerMode",
    "create_service",
]
