# allocation_engine/core/data_provider.py

"""Read-only access to the project data the engine consumes."""

from typing import Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

from .exceptions import ValidationError
from .problem_model import ProjectHistoryPoint, Resource, Task


@runtime_checkable
class ProjectDataProvider(Protocol):
    """Source of task, resource and history snapshots"""

    def get_tasks(self, ids: Sequence[str]) -> List[Task]: ...

    def get_resources(self, ids: Sequence[str]) -> List[Resource]: ...

    def get_history(self, project_id: str) -> List[ProjectHistoryPoint]: ...


class InMemoryDataProvider:
    """Dictionary-backed provider, used by embedders and tests"""

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        resources: Iterable[Resource] = (),
        history: Optional[Dict[str, List[ProjectHistoryPoint]]] = None,
    ):
        self._tasks: Dict[str, Task] = {task.id: task for task in tasks}
        self._resources: Dict[str, Resource] = {r.id: r for r in resources}
        self._history: Dict[str, List[ProjectHistoryPoint]] = dict(history or {})

    def add_task(self, task: Task) -> None:
        self._tasks[task.id] = task

    def add_resource(self, resource: Resource) -> None:
        self._resources[resource.id] = resource

    def set_history(self, project_id: str, points: List[ProjectHistoryPoint]) -> None:
        self._history[project_id] = sorted(points, key=lambda p: p.day)

    def get_tasks(self, ids: Sequence[str]) -> List[Task]:
        missing = [task_id for task_id in ids if task_id not in self._tasks]
        if missing:
            raise ValidationError(
                "Unknown task ids", errors=[f"unknown task: {i}" for i in missing]
            )
        return [self._tasks[task_id] for task_id in ids]

    def get_resources(self, ids: Sequence[str]) -> List[Resource]:
        missing = [rid for rid in ids if rid not in self._resources]
        if missing:
            raise ValidationError(
                "Unknown resource ids",
                errors=[f"unknown resource: {i}" for i in missing],
            )
        return [self._resources[rid] for rid in ids]

    def get_history(self, project_id: str) -> List[ProjectHistoryPoint]:
        return list(self._history.get(project_id, []))
