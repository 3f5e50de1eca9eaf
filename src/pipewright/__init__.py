from .dsl import job, sh, uses, matrix, on, workflow, JobBuilder, build
from .dispatcher import Dispatcher, ScheduleTimer
from .executors import ActionRegistry, ActionResult
from .model import Event, Job, Step, Workflow
from .parser import load_workflow, parse_workflow
from .runner import RetryPolicy, WorkflowRunner

__all__ = [
    "job", "sh", "uses", "matrix", "on", "workflow", "JobBuilder", "build",
    "Dispatcher", "ScheduleTimer", "ActionRegistry", "ActionResult",
    "Event", "Job", "Step", "Workflow",
    "load_workflow", "parse_workflow", "RetryPolicy", "WorkflowRunner",
]
