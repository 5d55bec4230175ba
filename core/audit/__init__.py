"""
Audit and repair for derived structures.
"""

from .engine import AuditEngine
from .report import AuditReport
from .repair import RepairEngine, RepairSummary, InstancesRepair, IndexRepair, ParticipationRepair
from .scheduler import PeriodicHealthCheck, SchedulerConfig

__all__ = [
    "AuditEngine",
    "AuditReport",
    "RepairEngine",
    "RepairSummary",
    "InstancesRepair",
    "IndexRepair",
    "ParticipationRepair",
    "PeriodicHealthCheck",
    "SchedulerConfig"
]
