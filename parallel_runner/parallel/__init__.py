"""
Parallel Execution Module
=========================

Infrastructure for running work items in parallel using git worktrees and
dependency-ordered waves.

Main Components:
- WaveScheduler: Validates the dependency graph and computes waves
- WorktreeManager: One isolated git worktree per work item
- SessionSupervisor: One supervised CLI process per work item
- MergeCoordinator: Serialized integration into the target branch
- ExecutionOrchestrator: Drives waves with bounded concurrency

Usage:
    from parallel_runner.parallel import ExecutionOrchestrator, WaveScheduler

    plan = WaveScheduler().build_plan(items)
    orchestrator = ExecutionOrchestrator.create(project_path, config)
    summary = await orchestrator.start_execution(plan)
"""

from parallel_runner.parallel.events import EventChannel
from parallel_runner.parallel.merge_coordinator import MergeCoordinator, MergeResult
from parallel_runner.parallel.orchestrator import ExecutionOrchestrator, ExecutionSummary, RunState
from parallel_runner.parallel.registry import Registry
from parallel_runner.parallel.session_supervisor import SessionStatus, SessionSupervisor, buffer_to_status
from parallel_runner.parallel.wave_scheduler import DependencyGraph, WaveScheduler
from parallel_runner.parallel.worktree_manager import WorktreeInfo, WorktreeManager, WorktreeState

__all__ = [
    'EventChannel',
    'MergeCoordinator',
    'MergeResult',
    'ExecutionOrchestrator',
    'ExecutionSummary',
    'RunState',
    'Registry',
    'SessionStatus',
    'SessionSupervisor',
    'buffer_to_status',
    'DependencyGraph',
    'WaveScheduler',
    'WorktreeInfo',
    'WorktreeManager',
    'WorktreeState',
]
