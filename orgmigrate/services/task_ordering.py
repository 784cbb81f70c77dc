"""Computes the query, update and delete orders of migration tasks."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..constants import (
    MAX_ORDERING_ITERATIONS,
    SPECIAL_OBJECT_DELETE_ORDER,
    SPECIAL_OBJECT_QUERY_ORDER,
    SPECIAL_OBJECT_UPDATE_ORDER,
)
from ..models.script import Operation
from ..models.task import MigrationTask

logger = logging.getLogger(__name__)


@dataclass
class TaskOrder:
    """The three independent execution orders of one run."""
    query: List[MigrationTask] = field(default_factory=list)
    update: List[MigrationTask] = field(default_factory=list)
    delete: List[MigrationTask] = field(default_factory=list)
    correctness_risks: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        """Convert to dictionary representation."""
        return {
            "query": [t.name for t in self.query],
            "update": [t.name for t in self.update],
            "delete": [t.name for t in self.delete],
        }


class TaskOrderingEngine:
    """
    Orders tasks so that parents are handled before the children referencing them.

    Lookup and master/detail edges are hard: they are ordered with a
    topological sort whose ties follow declaration order. The override
    tables are soft precedence rules applied afterwards by bounded passes.
    Any bounded pass that does not settle within ``max_iterations`` is
    recorded as a correctness risk.
    """

    def __init__(self, max_iterations: int = MAX_ORDERING_ITERATIONS, use_legacy_chain: bool = False):
        """
        Initialize the engine.

        Args:
            max_iterations: Cap for every bounded stabilization pass
            use_legacy_chain: Build chains with the insertion heuristic instead of the topological sort
        """
        self.max_iterations = max_iterations
        self.use_legacy_chain = use_legacy_chain

    def build_order(self, tasks: List[MigrationTask], declared_order_only: bool = False) -> TaskOrder:
        """
        Compute query, update and delete orders.

        Args:
            tasks: One task per active object
            declared_order_only: Keep declaration order, record types first

        Returns:
            TaskOrder with all three lists
        """
        order = TaskOrder()
        tasks = sorted(tasks, key=lambda t: t.obj.declaration_index)
        update_tasks = [t for t in tasks if t.obj.can_update]
        delete_tasks = [t for t in tasks if t.obj.can_delete]

        if declared_order_only:
            order.query = self._declared_order(tasks)
            order.update = self._declared_order(update_tasks)
            order.delete = self._declared_order(delete_tasks)
            self._log_order(order)
            return order

        # Query order
        front_loaded = {t.name for t in tasks if t.process_all_source or t.obj.is_limited_query}
        order.query = self._chain(
            tasks,
            readonly_first=True,
            priority=lambda t: (
                not t.obj.is_record_type,
                not t.obj.is_readonly_object,
                t.name not in front_loaded,
                t.obj.declaration_index,
            ),
        )
        order.query = self._stabilize(order.query, order, "query")
        order.query = self._apply_precedence(
            order.query, SPECIAL_OBJECT_QUERY_ORDER, order, "query", allow=self._may_precede_in_query
        )

        # Update order
        order.update = self._chain(update_tasks, readonly_first=False)
        order.update = self._stabilize(order.update, order, "update")
        order.update = self._apply_precedence(order.update, SPECIAL_OBJECT_UPDATE_ORDER, order, "update")

        # Delete order: children before parents
        order.delete = self._chain(delete_tasks, readonly_first=False)
        order.delete = self._stabilize(order.delete, order, "delete")
        order.delete.reverse()
        order.delete = self._apply_precedence(order.delete, SPECIAL_OBJECT_DELETE_ORDER, order, "delete")

        self._log_order(order)
        return order

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def _declared_order(self, tasks: List[MigrationTask]) -> List[MigrationTask]:
        return [t for t in tasks if t.obj.is_record_type] + [t for t in tasks if not t.obj.is_record_type]

    def _hard_parents(self, task: MigrationTask, names: Set[str], readonly_first: bool) -> Set[str]:
        if readonly_first and task.obj.is_readonly_object:
            return set()
        return {
            parent.name for parent in task.obj.parent_lookup_objects
            if parent.name != task.name and parent.name in names
        }

    def _chain(
        self,
        tasks: List[MigrationTask],
        readonly_first: bool,
        priority: Optional[Callable[[MigrationTask], Tuple]] = None,
    ) -> List[MigrationTask]:
        if self.use_legacy_chain:
            return self.legacy_chain(tasks, readonly_first)
        return self.topological_chain(tasks, readonly_first, priority)

    def topological_chain(
        self,
        tasks: List[MigrationTask],
        readonly_first: bool = True,
        priority: Optional[Callable[[MigrationTask], Tuple]] = None,
    ) -> List[MigrationTask]:
        """
        Order tasks parents-first with Kahn's algorithm.

        Among tasks whose parents are all placed, the lowest ``priority`` goes
        next. A cycle is broken by placing the earliest-declared remaining task
        that has no pending master/detail parent.
        """
        if priority is None:
            priority = lambda t: (not t.obj.is_record_type, t.obj.declaration_index)

        names = {t.name for t in tasks}
        parents = {t.name: self._hard_parents(t, names, readonly_first) for t in tasks}
        remaining = list(tasks)
        placed: Set[str] = set()
        result: List[MigrationTask] = []

        while remaining:
            ready = [t for t in remaining if parents[t.name] <= placed]
            if ready:
                chosen = min(ready, key=priority)
            else:
                pending = {t.name for t in remaining}
                candidates = [
                    t for t in remaining
                    if not {p.name for p in t.obj.parent_master_detail_objects} & (pending - {t.name})
                ]
                chosen = min(candidates or remaining, key=lambda t: t.obj.declaration_index)
                logger.warning(
                    f"Dependency cycle among {', '.join(sorted(pending))}; placing {chosen.name} first"
                )
            result.append(chosen)
            remaining.remove(chosen)
            placed.add(chosen.name)

        return result

    def legacy_chain(self, tasks: List[MigrationTask], readonly_first: bool = True) -> List[MigrationTask]:
        """
        Order tasks with the insertion heuristic.

        Record types go to the front, read-only objects right after them in
        their relative order, and every other object is spliced in before the
        earliest placed task that lists it as a parent.
        """
        chain: List[MigrationTask] = []
        floor = 0
        for task in tasks:
            if task.obj.is_record_type:
                chain.insert(0, task)
                floor += 1
            elif readonly_first and task.obj.operation == Operation.READONLY:
                chain.insert(floor, task)
                floor += 1
            else:
                index = len(chain)
                for j in range(len(chain) - 1, floor - 1, -1):
                    if task.obj in chain[j].obj.parent_lookup_objects:
                        index = j
                chain.insert(index, task)
        return chain

    # ------------------------------------------------------------------
    # Bounded passes
    # ------------------------------------------------------------------

    def _move_before(self, order: List[MigrationTask], mover: MigrationTask, anchor: MigrationTask) -> None:
        order.remove(mover)
        order.insert(order.index(anchor), mover)

    def _stabilize(self, order: List[MigrationTask], result: TaskOrder, label: str) -> List[MigrationTask]:
        """Move every master/detail parent in front of its child."""
        order = list(order)
        by_name = {t.name: t for t in order}
        for _ in range(self.max_iterations):
            changed = False
            for task in list(order):
                for parent in task.obj.parent_master_detail_objects:
                    parent_task = by_name.get(parent.name)
                    if parent_task is None or parent_task is task:
                        continue
                    if order.index(parent_task) > order.index(task):
                        self._move_before(order, parent_task, task)
                        changed = True
            if not changed:
                return order

        self._record_risk(result, f"{label} order: master/detail precedence did not settle within "
                                  f"{self.max_iterations} iterations")
        return order

    def _apply_precedence(
        self,
        order: List[MigrationTask],
        table: Dict[str, List[str]],
        result: TaskOrder,
        label: str,
        allow: Optional[Callable[[MigrationTask, MigrationTask], bool]] = None,
    ) -> List[MigrationTask]:
        """
        Apply override rules: each key object goes before every listed object.

        ``allow(first, other)`` can veto a single move.
        """
        order = list(order)
        by_name = {t.name: t for t in order}
        for _ in range(self.max_iterations):
            changed = False
            for first, others in table.items():
                first_task = by_name.get(first)
                if first_task is None:
                    continue
                for other in others:
                    other_task = by_name.get(other)
                    if other_task is None or order.index(first_task) < order.index(other_task):
                        continue
                    if allow is None or allow(first_task, other_task):
                        self._move_before(order, first_task, other_task)
                        changed = True
            if not changed:
                return order

        self._record_risk(result, f"{label} order: override rules did not settle within "
                                  f"{self.max_iterations} iterations")
        return order

    @staticmethod
    def _may_precede_in_query(first: MigrationTask, other: MigrationTask) -> bool:
        # A non-master object never takes the lead over a master one
        return first.obj.master or not other.obj.master

    def _record_risk(self, result: TaskOrder, message: str) -> None:
        logger.warning(f"Correctness risk: {message}")
        result.correctness_risks.append(message)

    def _log_order(self, order: TaskOrder) -> None:
        for name, names in order.to_dict().items():
            logger.info(f"{name.capitalize()} order: {', '.join(names) or '(empty)'}")
