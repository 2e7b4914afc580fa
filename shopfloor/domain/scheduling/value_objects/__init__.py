from .attribution import SYSTEM_DEVICE_ID, SYSTEM_OPERATOR_ID, Attribution
from .enums import StageEventType, StageExecutionStatus
from .shift_calendar import ShiftBreak, ShiftCalendar

__all__ = [
    "Attribution",
    "SYSTEM_DEVICE_ID",
    "SYSTEM_OPERATOR_ID",
    "ShiftBreak",
    "ShiftCalendar",
    "StageEventType",
    "StageExecutionStatus",
]
