"""Joule: a budget-aware task orchestration kernel."""

from joule.engine import Joule
from joule.kernel.models import Task, TaskResult, TaskStatus

__version__ = "0.1.0"

__all__ = ["Joule", "Task", "TaskResult", "TaskStatus", "__version__"]
