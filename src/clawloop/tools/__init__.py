"""Tool domain: capability contract, executor and process helper."""

from clawloop.tools.base import build_validator
from clawloop.tools.base import describe
from clawloop.tools.base import FunctionTool
from clawloop.tools.base import Tool
from clawloop.tools.base import ToolSafety
from clawloop.tools.base import validate_arguments
from clawloop.tools.executor import ToolExecutor
from clawloop.tools.process import ProcessResult
from clawloop.tools.process import run_process

__all__ = [
    "FunctionTool",
    "ProcessResult",
    "Tool",
    "ToolExecutor",
    "ToolSafety",
    "build_validator",
    "describe",
    "run_process",
    "validate_arguments",
]
