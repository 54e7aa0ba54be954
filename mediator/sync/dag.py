"""
Lightweight task graph used to drive one sync item through its pipeline.

- Tasks execute in topological order, each receiving the merged context of
  its upstream dependencies.
- A failing task marks its dependents as skipped; nothing downstream of a
  failure runs, so a half-transformed resource is never written.
- Each task may declare the item state it advances the item to; the
  ItemState machine only moves forward.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ItemState(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    TRANSFORMED = "transformed"
    UPSERTED = "upserted"
    FAILED = "failed"


_STATE_RANK = {
    ItemState.PENDING: 0,
    ItemState.VALIDATED: 1,
    ItemState.TRANSFORMED: 2,
    ItemState.UPSERTED: 3,
}


class InvalidTransition(ValueError):
    pass


@dataclass
class ItemTracker:
    """Forward-only state of one sync item."""

    state: ItemState = ItemState.PENDING
    reason: str | None = None
    history: list[ItemState] = field(default_factory=lambda: [ItemState.PENDING])

    def advance(self, new_state: ItemState, reason: str | None = None) -> None:
        if self.state in (ItemState.UPSERTED, ItemState.FAILED):
            raise InvalidTransition(f"Item already {self.state.value}; cannot move to {new_state.value}")
        if new_state is ItemState.FAILED:
            self.reason = reason
        elif _STATE_RANK[new_state] <= _STATE_RANK[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} back to {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


@dataclass
class TaskNode:
    """A single step inside a DAG."""

    name: str
    execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None]
    depends_on: list[str] = field(default_factory=list)
    advances_to: ItemState | None = None
    status: TaskStatus = TaskStatus.PENDING
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    exception: Exception | None = None
    duration_ms: float = 0.0


class DAG:
    """
    A directed acyclic graph of TaskNodes.

    Usage:
        dag = DAG("Patient:abc")
        dag.add_task("resolve", resolve_fn)
        dag.add_task("validate", validate_fn, depends_on=["resolve"], advances_to=ItemState.VALIDATED)
        dag.add_task("transform", transform_fn, depends_on=["validate"], advances_to=ItemState.TRANSFORMED)
        dag.add_task("upsert", upsert_fn, depends_on=["transform"], advances_to=ItemState.UPSERTED)
        summary = dag.run({"payload": payload})
    """

    def __init__(self, name: str):
        self.name = name
        self.tasks: dict[str, TaskNode] = {}
        self.tracker = ItemTracker()

    def add_task(
        self,
        name: str,
        execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None],
        depends_on: list[str] | None = None,
        advances_to: ItemState | None = None,
    ) -> DAG:
        if name in self.tasks:
            raise ValueError(f"Duplicate task name: {name}")
        self.tasks[name] = TaskNode(
            name=name,
            execute_fn=execute_fn,
            depends_on=depends_on or [],
            advances_to=advances_to,
        )
        return self

    def _topological_sort(self) -> list[str]:
        """Kahn's algorithm – returns tasks in dependency order."""
        in_degree: dict[str, int] = {name: 0 for name in self.tasks}
        for task in self.tasks.values():
            for dep in task.depends_on:
                if dep not in self.tasks:
                    raise ValueError(
                        f"Task '{task.name}' depends on unknown task '{dep}'"
                    )
                in_degree[task.name] += 1

        queue = [name for name, deg in in_degree.items() if deg == 0]
        order: list[str] = []

        while queue:
            current = queue.pop(0)
            order.append(current)
            for name, task in self.tasks.items():
                if current in task.depends_on:
                    in_degree[name] -= 1
                    if in_degree[name] == 0:
                        queue.append(name)

        if len(order) != len(self.tasks):
            raise ValueError("Cycle detected in DAG")
        return order

    @property
    def failed_task(self) -> TaskNode | None:
        for task in self.tasks.values():
            if task.status == TaskStatus.FAILED:
                return task
        return None

    def run(self, initial_context: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute all tasks in topological order and return a run summary."""
        execution_order = self._topological_sort()
        context = dict(initial_context or {})
        summary: dict[str, Any] = {"pipeline": self.name, "tasks": {}}

        logger.debug("Starting pipeline '%s' with %d tasks", self.name, len(self.tasks))

        for task_name in execution_order:
            task = self.tasks[task_name]

            upstream_failed = any(
                self.tasks[dep].status in (TaskStatus.FAILED, TaskStatus.SKIPPED)
                for dep in task.depends_on
            )
            if upstream_failed:
                task.status = TaskStatus.SKIPPED
                logger.debug("Skipping '%s' – upstream dependency failed", task_name)
                summary["tasks"][task_name] = {"status": "skipped"}
                continue

            for dep in task.depends_on:
                context.update(self.tasks[dep].result)

            task.status = TaskStatus.RUNNING
            start = time.perf_counter()
            try:
                task.result = task.execute_fn(context) or {}
                task.status = TaskStatus.SUCCESS
                if task.advances_to is not None:
                    self.tracker.advance(task.advances_to)
            except Exception as exc:
                task.status = TaskStatus.FAILED
                task.error = str(exc)
                task.exception = exc
                self.tracker.advance(ItemState.FAILED, reason=f"{task_name}: {exc}")
                logger.warning("Pipeline '%s' failed at '%s': %s", self.name, task_name, exc)
            finally:
                task.duration_ms = (time.perf_counter() - start) * 1000

            summary["tasks"][task_name] = {
                "status": task.status.value,
                "duration_ms": round(task.duration_ms, 2),
                "error": task.error,
            }

        all_success = all(t.status == TaskStatus.SUCCESS for t in self.tasks.values())
        summary["status"] = "completed" if all_success else "failed"
        summary["state"] = self.tracker.state.value
        return summary

