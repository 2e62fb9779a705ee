#!/usr/bin/env python3
"""
Run Work Items in Parallel

Scans a project's spec directory, prints the wave plan and runs it: one git
worktree and one CLI session per work item, merging finished work into the
target branch.

Usage:
    python scripts/run_parallel.py <project_path> [--plan-only] [--max-parallel N]

Settings come from an optional YAML file (--config or PARALLEL_RUNNER_CONFIG)
and PARALLEL_RUNNER_* variables in the environment or .env.
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from parallel_runner.config import load_config, validate_config
from parallel_runner.errors import ParallelRunnerError
from parallel_runner.execution_plan import ExecutionPlan, ExecutionSnapshot
from parallel_runner.parallel.orchestrator import ExecutionOrchestrator
from parallel_runner.parallel.wave_scheduler import WaveScheduler
from parallel_runner.spec_scanner import scan_work_items


def print_plan(plan: ExecutionPlan):
    print(f"\n{'='*60}")
    print(f"Execution plan: {plan.total_items} items, {plan.wave_count} waves, "
          f"parallelism {plan.estimated_parallelism}")
    print(f"{'='*60}")
    for wave in plan.waves:
        print(f"Wave {wave.wave_number}:")
        for item in wave.items:
            deps = f" (after {', '.join(item.dependencies)})" if item.dependencies else ""
            print(f"  - {item.id}: {item.title}{deps}")


async def run(args) -> int:
    overrides = {}
    if args.max_parallel is not None:
        overrides['max_parallel_sessions'] = args.max_parallel
    if args.merge_strategy:
        overrides['merge_strategy'] = args.merge_strategy

    config = load_config(args.config)
    if overrides:
        config = validate_config({**config.model_dump(), **overrides})

    project_path = Path(args.project_path).resolve()
    items = scan_work_items(project_path, config.specs_dir)
    if not items:
        print(f"ERROR: No specs found under {project_path / config.specs_dir}")
        return 1

    plan = WaveScheduler().build_plan(items)
    print_plan(plan)

    if args.plan_only:
        return 0

    orchestrator = ExecutionOrchestrator.create(str(project_path), config)

    if args.resume:
        snapshot_data = json.loads(Path(args.resume).read_text(encoding='utf-8'))
        orchestrator.restore(ExecutionSnapshot.from_dict(snapshot_data))

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(orchestrator.stop_execution()))
    except NotImplementedError:
        pass  # Windows

    summary = await orchestrator.start_execution(plan)

    print(f"\n{'='*60}")
    print(f"Run {summary.state.value}: {summary.completed} completed, {summary.failed} failed, "
          f"{summary.skipped} skipped, {summary.cancelled} cancelled, {summary.merged} merged")
    for result in summary.results:
        line = f"  [{result.status.upper()}] {result.work_item_id}"
        if result.error:
            line += f" - {result.error}"
        print(line)

    if args.snapshot:
        Path(args.snapshot).write_text(json.dumps(orchestrator.snapshot().to_dict(), indent=2), encoding='utf-8')
        print(f"\nSnapshot written to {args.snapshot}")

    return 0 if summary.failed == 0 and summary.skipped == 0 and summary.cancelled == 0 else 1


def main():
    parser = argparse.ArgumentParser(description="Run work items in parallel git worktrees")
    parser.add_argument('project_path', help='Git repository containing the specs')
    parser.add_argument('--config', default=None, help='YAML config file')
    parser.add_argument('--plan-only', action='store_true', help='Print the wave plan and exit')
    parser.add_argument('--max-parallel', type=int, default=None, help='Concurrent sessions (1-10)')
    parser.add_argument('--merge-strategy', choices=['squash', 'merge', 'rebase'], default=None)
    parser.add_argument('--snapshot', default=None, help='Write the resumable run state to this file')
    parser.add_argument('--resume', default=None, help='Resume from a snapshot file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    try:
        sys.exit(asyncio.run(run(args)))
    except ParallelRunnerError as e:
        print(f"ERROR: {e.format()}")
        sys.exit(2)


if __name__ == "__main__":
    main()
