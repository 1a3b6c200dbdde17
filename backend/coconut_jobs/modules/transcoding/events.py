"""Job and output lifecycle events."""

from dataclasses import dataclass
from typing import Any, Optional

from coconut_jobs.core.events import CancellableEvent, Event


EVENT_BEFORE_SAVE_JOB = "beforeSaveJob"
EVENT_AFTER_SAVE_JOB = "afterSaveJob"
EVENT_BEFORE_CANCEL_JOB = "beforeCancelJob"
EVENT_AFTER_CANCEL_JOB = "afterCancelJob"
EVENT_BEFORE_SAVE_OUTPUT = "beforeSaveOutput"
EVENT_AFTER_SAVE_OUTPUT = "afterSaveOutput"
EVENT_BEFORE_CLEAR_OUTPUTS = "beforeClearOutputs"


@dataclass
class JobEvent(Event):
    job: Any = None
    is_new: bool = False
    previous_status: Optional[str] = None


@dataclass
class CancellableJobEvent(CancellableEvent):
    job: Any = None


@dataclass
class OutputEvent(Event):
    output: Any = None
    is_new: bool = False


@dataclass
class ClearOutputsEvent(CancellableEvent):
    """Raised before outputs matching ``criteria`` are deleted."""
    criteria: Optional[dict] = None
