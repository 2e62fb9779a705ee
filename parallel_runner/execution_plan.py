"""
Execution Plan
==============

Data model shared by the scheduler and the orchestrator: work items, waves,
the ordered execution plan, and the resumable run snapshot.

Plans and snapshots are plain dataclasses with to_dict()/from_dict() so they
can be persisted or sent over the API by callers.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional


class WorkItemStatus(str, Enum):
    """Lifecycle status of a work item. Written only by the orchestrator."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkItem:
    """
    A unit of work with declared dependencies.

    Attributes:
        id: Unique, stable identifier
        title: Human readable title
        dependencies: Ids of items that must finish first, in declared order
        status: Current lifecycle status
        file_path: Source file the item was scanned from (optional)
    """
    id: str
    title: str = ""
    dependencies: List[str] = field(default_factory=list)
    status: WorkItemStatus = WorkItemStatus.PENDING
    file_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            dependencies=[str(d) for d in data.get("dependencies", [])],
            status=WorkItemStatus(data.get("status", WorkItemStatus.PENDING.value)),
            file_path=data.get("file_path"),
        )


@dataclass
class Wave:
    """
    Items whose dependencies are all satisfied by earlier waves.

    Attributes:
        wave_number: 0-based position in the plan
        items: Members in scan order
    """
    wave_number: int
    items: List[WorkItem] = field(default_factory=list)

    @property
    def item_ids(self) -> List[str]:
        return [item.id for item in self.items]

    def __len__(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wave_number": self.wave_number,
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Wave":
        return cls(
            wave_number=int(data["wave_number"]),
            items=[WorkItem.from_dict(i) for i in data.get("items", [])],
        )


@dataclass
class ExecutionPlan:
    """
    Ordered waves covering every work item exactly once.

    Attributes:
        waves: Waves in execution order
        total_items: Number of work items across all waves
        estimated_parallelism: Size of the largest wave
    """
    waves: List[Wave]
    total_items: int
    estimated_parallelism: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "waves": [w.to_dict() for w in self.waves],
            "total_items": self.total_items,
            "estimated_parallelism": self.estimated_parallelism,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionPlan":
        """Create ExecutionPlan from dictionary."""
        return cls(
            waves=[Wave.from_dict(w) for w in data.get("waves", [])],
            total_items=int(data.get("total_items", 0)),
            estimated_parallelism=int(data.get("estimated_parallelism", 0)),
        )

    @property
    def wave_count(self) -> int:
        return len(self.waves)

    def all_items(self) -> List[WorkItem]:
        """All work items in wave order."""
        return [item for wave in self.waves for item in wave.items]

    def get_item(self, work_item_id: str) -> Optional[WorkItem]:
        for item in self.all_items():
            if item.id == work_item_id:
                return item
        return None

    def wave_of(self, work_item_id: str) -> Optional[int]:
        """Return the wave number containing an item, or None."""
        for wave in self.waves:
            if work_item_id in wave.item_ids:
                return wave.wave_number
        return None


@dataclass
class ExecutionSnapshot:
    """
    Resumable run state.

    Attributes:
        completed_work_item_ids: Items whose work is done and integrated
        current_wave_index: Wave to resume from
    """
    completed_work_item_ids: List[str] = field(default_factory=list)
    current_wave_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionSnapshot":
        return cls(
            completed_work_item_ids=[str(i) for i in data.get("completed_work_item_ids", [])],
            current_wave_index=int(data.get("current_wave_index", 0)),
        )
