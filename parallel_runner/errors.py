"""
Error Types
===========

Exception hierarchy shared by the scheduler, worktree manager, session
supervisor, merge coordinator and orchestrator.

Every error carries a stable code so that API and CLI layers can report
failures without parsing messages.
"""

from typing import Any, Dict, List, Optional


# Error codes, grouped by subsystem
SESSION_START_FAILED = "E0011"
SESSION_CRASHED = "E0012"
SESSION_NOT_FOUND = "E0013"
SESSION_ALREADY_RUNNING = "E0014"
SESSION_INPUT_FAILED = "E0015"

WORKTREE_CREATE_FAILED = "E0021"
WORKTREE_REMOVE_FAILED = "E0022"
WORKTREE_ALREADY_EXISTS = "E0023"
WORKTREE_NOT_FOUND = "E0024"
WORKTREE_LOCKED = "E0025"

CONFIG_INVALID_VALUE = "E0032"

ANALYSIS_PARSE_FAILED = "E0041"
ANALYSIS_DEPENDENCY_CYCLE = "E0042"
ANALYSIS_INVALID_SPEC = "E0043"
ANALYSIS_NO_SPECS_FOUND = "E0044"
ANALYSIS_INVALID_REFERENCE = "E0045"

MERGE_CONFLICT = "E0051"
MERGE_FAILED = "E0052"

EXECUTION_ALREADY_RUNNING = "E0061"
EXECUTION_INVALID_STATE = "E0062"


class ParallelRunnerError(Exception):
    """
    Base class for all parallel runner errors.

    Attributes:
        code: Stable error code (e.g. "E0042")
        message: Human readable message
        details: Optional extra context
    """

    code = "E0000"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def format(self) -> str:
        """Format as "[code] message - details"."""
        text = f"[{self.code}] {self.message}"
        if self.details:
            text += f" - {self.details}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'type': type(self).__name__,
            'message': self.message,
            'details': self.details,
        }


class AnalysisError(ParallelRunnerError):
    """
    Raised when the work item graph cannot be turned into a plan.

    Attributes:
        kind: "cycle", "invalid_reference" or "invalid_item"
        cycle: Item ids forming the cycle, first id repeated at the end
        references: Offending (item_id, dependency_id) pairs
    """

    def __init__(
        self,
        message: str,
        kind: str,
        cycle: Optional[List[str]] = None,
        references: Optional[List[tuple]] = None,
        details: Optional[str] = None
    ):
        codes = {
            'cycle': ANALYSIS_DEPENDENCY_CYCLE,
            'invalid_reference': ANALYSIS_INVALID_REFERENCE,
            'invalid_item': ANALYSIS_INVALID_SPEC,
        }
        super().__init__(message, code=codes.get(kind, ANALYSIS_PARSE_FAILED), details=details)
        self.kind = kind
        self.cycle = cycle or []
        self.references = references or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['kind'] = self.kind
        if self.cycle:
            data['cycle'] = self.cycle
        if self.references:
            data['references'] = [list(ref) for ref in self.references]
        return data


class WorktreeError(ParallelRunnerError):
    """
    Raised when a worktree cannot be created or removed.

    Attributes:
        kind: "create_failed", "remove_failed", "already_exists", "conflict"
        work_item_id: Work item the worktree belongs to
        recoverable: Whether retrying later may succeed
    """

    def __init__(
        self,
        message: str,
        kind: str,
        work_item_id: Optional[str] = None,
        recoverable: bool = True,
        details: Optional[str] = None
    ):
        codes = {
            'create_failed': WORKTREE_CREATE_FAILED,
            'remove_failed': WORKTREE_REMOVE_FAILED,
            'already_exists': WORKTREE_ALREADY_EXISTS,
            'not_found': WORKTREE_NOT_FOUND,
            'conflict': WORKTREE_LOCKED,
        }
        super().__init__(message, code=codes.get(kind, WORKTREE_CREATE_FAILED), details=details)
        self.kind = kind
        self.work_item_id = work_item_id
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'kind': self.kind,
            'work_item_id': self.work_item_id,
            'recoverable': self.recoverable,
        })
        return data


class SessionError(ParallelRunnerError):
    """Raised when a session process cannot be spawned or crashes."""

    code = SESSION_START_FAILED

    def __init__(self, message: str, session_id: Optional[str] = None, code: Optional[str] = None,
                 details: Optional[str] = None):
        super().__init__(message, code=code, details=details)
        self.session_id = session_id


class MergeError(ParallelRunnerError):
    """Raised when integrating a branch into trunk fails for a non-conflict reason."""

    code = MERGE_FAILED


class MergeConflictError(MergeError):
    """Raised when integrating a branch leaves unmerged paths."""

    code = MERGE_CONFLICT

    def __init__(self, message: str, conflict_files: Optional[List[str]] = None,
                 details: Optional[str] = None):
        super().__init__(message, details=details)
        self.conflict_files = conflict_files or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['conflict_files'] = self.conflict_files
        return data


class ConfigError(ParallelRunnerError):
    """Raised when configuration values are rejected."""

    code = CONFIG_INVALID_VALUE


class OrchestratorError(ParallelRunnerError):
    """Raised for commands that are invalid in the current run state."""

    code = EXECUTION_INVALID_STATE
