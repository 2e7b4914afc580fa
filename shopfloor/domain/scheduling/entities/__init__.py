from .batch import Batch, SubBatch
from .detail import Detail
from .machine import Machine, MachineType
from .route import Route, RouteStage
from .setup_time import SetupTime
from .stage_event import StageEvent
from .stage_execution import StageExecution

__all__ = [
    "Batch",
    "Detail",
    "Machine",
    "MachineType",
    "Route",
    "RouteStage",
    "SetupTime",
    "StageEvent",
    "StageExecution",
    "SubBatch",
]
