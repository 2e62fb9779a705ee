"""
Parallel Runner
===============

Runs dependency-ordered work items in parallel, one git worktree and one CLI
session per item, and merges finished work back into the target branch.
"""

from parallel_runner.config import RunnerConfig, load_config
from parallel_runner.errors import (
    AnalysisError,
    ConfigError,
    MergeConflictError,
    MergeError,
    OrchestratorError,
    ParallelRunnerError,
    SessionError,
    WorktreeError,
)
from parallel_runner.execution_plan import (
    ExecutionPlan,
    ExecutionSnapshot,
    Wave,
    WorkItem,
    WorkItemStatus,
)
from parallel_runner.spec_scanner import scan_work_items

__version__ = "0.1.0"

__all__ = [
    'RunnerConfig',
    'load_config',
    'AnalysisError',
    'ConfigError',
    'MergeConflictError',
    'MergeError',
    'OrchestratorError',
    'ParallelRunnerError',
    'SessionError',
    'WorktreeError',
    'ExecutionPlan',
    'ExecutionSnapshot',
    'Wave',
    'WorkItem',
    'WorkItemStatus',
    'scan_work_items',
]
