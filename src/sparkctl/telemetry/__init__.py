"""
Telemetry Module

Per-node CPU, memory and disk sampling for job runs.
"""
from .controller import (
    TelemetryController,
    TelemetryStopReport,
    CPU_MEMORY_ROLE,
    DISK_ROLE
)

__all__ = [
    "TelemetryController",
    "TelemetryStopReport",
    "CPU_MEMORY_ROLE",
    "DISK_ROLE"
]
