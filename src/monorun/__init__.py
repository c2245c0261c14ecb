"""Composable task runner for monorepos.

Declare tasks, compose them with `serial` and `parallel`, scope them to
subdirectories with `with_options`, and run them with `execute`.
"""

from .config import Config
from .context import CancelScope, ExecutionContext, Output
from .core import FlagDef, Runnable, Task, do, parallel, serial, task, with_options
from .detect import DetectFunc, detect_by_file
from .engine import Execution, execute, run_task
from .errors import Cancelled, CommandError, ConfigError, FlagError, MonorunError
from .plan import Plan, TaskInfo, build_plan
from .process import run_command

__all__ = [
    "Cancelled",
    "CancelScope",
    "CommandError",
    "Config",
    "ConfigError",
    "DetectFunc",
    "Execution",
    "ExecutionContext",
    "FlagDef",
    "FlagError",
    "MonorunError",
    "Output",
    "Plan",
    "Runnable",
    "Task",
    "TaskInfo",
    "build_plan",
    "detect_by_file",
    "do",
    "execute",
    "parallel",
    "run_command",
    "run_task",
    "serial",
    "task",
    "with_options",
]
