"""
Core Module

Memory budgets and distributed run orchestration.
"""
from .memory import (
    MemoryBudget,
    LocalRunBudget,
    compute_cluster_budget,
    compute_local_run_budget
)
from .orchestrator import (
    DistributedRunOrchestrator,
    JobSpec,
    RunResult,
    RunState
)

__all__ = [
    "MemoryBudget",
    "LocalRunBudget",
    "compute_cluster_budget",
    "compute_local_run_budget",
    "DistributedRunOrchestrator",
    "JobSpec",
    "RunResult",
    "RunState"
]
