"""
Domain Services

Scheduling logic spanning several entities: changeover lookups, guarded
stage transitions, batch planning, machine assignment and the periodic
reconciliation loop.
"""

from .batch_planner import (
    BatchPlanner,
    BatchProgress,
    BatchSizeOption,
    OptimalBatchSize,
    PlannedBatch,
    split_quantity,
)
from .reconciliation_loop import ReconciliationLoop, ReconciliationOptions, TickReport
from .scheduling_engine import SchedulingEngine
from .setup_time_matrix import SetupLookup, SetupRequirement, SetupTimeMatrix
from .stage_state_machine import ContinuationPolicy, StageStateMachine

__all__ = [
    "BatchPlanner",
    "BatchProgress",
    "BatchSizeOption",
    "ContinuationPolicy",
    "OptimalBatchSize",
    "PlannedBatch",
    "ReconciliationLoop",
    "ReconciliationOptions",
    "SchedulingEngine",
    "SetupLookup",
    "SetupRequirement",
    "SetupTimeMatrix",
    "StageStateMachine",
    "TickReport",
    "split_quantity",
]
