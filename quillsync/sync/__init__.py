from .orchestrator import OrchestratorState, SyncOrchestrator
from .status import SyncStatus, SyncStatusReporter
from .worker import SyncWorker

__all__ = ["OrchestratorState", "SyncOrchestrator", "SyncStatus", "SyncStatusReporter", "SyncWorker"]
