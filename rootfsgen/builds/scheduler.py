"""Parallel build scheduler.

This module handles:
- Dispatching packages in dependency order to a bounded worker pool
- Gating each package on the success of all its dependencies
- Stopping dispatch on the first failure or on cancellation
- Reporting completed, failed, cancelled and never-attempted packages

Ready packages are dispatched in name order, so a run with one worker is
fully deterministic. Packages that are already running when a failure
happens are allowed to finish.
"""

from __future__ import annotations

import heapq
import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from rootfsgen.builds.runner import BuildCancelledError
from rootfsgen.resolver.graph import BuildGraph
from rootfsgen.types import NodeOutcome, PackageDescriptor

logger = logging.getLogger(__name__)

# Build callback: package and the outcomes of its direct dependencies
BuildFn = Callable[[PackageDescriptor, Mapping[str, NodeOutcome]], NodeOutcome]


@dataclass
class PackageFailure:
    """Why a package failed.

    Attributes:
        error: The exception raised by the build.
        log_path: Build log, when the failure came from a build step.
    """

    error: BaseException
    log_path: Path | None = None

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass
class ScheduleResult:
    """Outcome of a scheduler run.

    Attributes:
        outcomes: Final outcome per package name.
        order: Packages in the order they finished.
        failed: Failure details per failed package.
        interrupted: True when the run was cancelled.
    """

    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    failed: dict[str, PackageFailure] = field(default_factory=dict)
    interrupted: bool = False

    def _with(self, *outcomes: NodeOutcome) -> list[str]:
        return sorted(name for name, outcome in self.outcomes.items() if outcome in outcomes)

    @property
    def completed(self) -> list[str]:
        return self._with(NodeOutcome.BUILT, NodeOutcome.RESTORED, NodeOutcome.UP_TO_DATE)

    @property
    def built(self) -> list[str]:
        return self._with(NodeOutcome.BUILT)

    @property
    def restored(self) -> list[str]:
        return self._with(NodeOutcome.RESTORED)

    @property
    def up_to_date(self) -> list[str]:
        return self._with(NodeOutcome.UP_TO_DATE)

    @property
    def cancelled(self) -> list[str]:
        return self._with(NodeOutcome.CANCELLED)

    @property
    def not_attempted(self) -> list[str]:
        return self._with(NodeOutcome.NOT_ATTEMPTED)

    @property
    def success(self) -> bool:
        return not self.failed and not self.interrupted and not self.not_attempted


class BuildScheduler:
    """Runs a build function over a BuildGraph with bounded parallelism.

    Args:
        graph: Resolved build graph (acyclic).
        build_fn: Called once per dispatched package with the outcomes of its
            direct dependencies; returns the package's outcome or raises.
        jobs: Maximum number of concurrent builds.
        cancel_event: Set to stop dispatch; also passed on to running steps
            by build_fn's owner.
    """

    def __init__(
        self,
        graph: BuildGraph,
        build_fn: BuildFn,
        jobs: int = 1,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.graph = graph
        self.build_fn = build_fn
        self.jobs = max(1, jobs)
        self.cancel_event = cancel_event or threading.Event()

    def _run_one(self, name: str, dep_outcomes: dict[str, NodeOutcome]) -> NodeOutcome:
        return self.build_fn(self.graph.get(name), dep_outcomes)

    def run(self) -> ScheduleResult:
        """Build every package in the graph.

        Returns:
            ScheduleResult; never raises for build failures.

        Raises:
            CircularDependencyError: If the graph has a cycle.
            KeyboardInterrupt: Re-raised after running builds are cancelled.
        """
        # Validates acyclicity before anything runs
        self.graph.topological_order()

        result = ScheduleResult()
        remaining = {name: len(self.graph.dependencies(name)) for name in self.graph.names}
        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        running: dict[Future[NodeOutcome], str] = {}
        stop = False

        logger.info("Scheduling %d packages with %d workers", len(remaining), self.jobs)

        executor = ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="rootfsgen-build")
        try:
            while ready or running:
                if self.cancel_event.is_set() and not result.interrupted:
                    logger.warning("Cancellation requested; stopping dispatch")
                    result.interrupted = True
                    stop = True

                while ready and not stop and len(running) < self.jobs:
                    name = heapq.heappop(ready)
                    dep_outcomes = {
                        dep: result.outcomes[dep] for dep in self.graph.dependencies(name)
                    }
                    logger.debug("Dispatching %s", name)
                    running[executor.submit(self._run_one, name, dep_outcomes)] = name

                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: running[f]):
                    name = running.pop(future)
                    outcome = self._collect(name, future, result)
                    result.outcomes[name] = outcome
                    result.order.append(name)

                    if outcome.succeeded:
                        for dependent in self.graph.dependents(name):
                            remaining[dependent] -= 1
                            if remaining[dependent] == 0:
                                heapq.heappush(ready, dependent)
                    elif outcome == NodeOutcome.CANCELLED:
                        result.interrupted = True
                        stop = True
                    elif not stop:
                        logger.error("Stopping dispatch after failure of %s", name)
                        stop = True
        except KeyboardInterrupt:
            logger.warning("Interrupted; cancelling running builds")
            self.cancel_event.set()
            result.interrupted = True
            for future, name in running.items():
                future.cancel()
                result.outcomes[name] = NodeOutcome.CANCELLED
            self._finish(result)
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        self._finish(result)
        return result

    def _collect(self, name: str, future: Future[NodeOutcome], result: ScheduleResult) -> NodeOutcome:
        try:
            outcome = future.result()
        except BuildCancelledError:
            logger.warning("%s cancelled", name)
            return NodeOutcome.CANCELLED
        except Exception as e:
            logger.error("%s failed: %s", name, e)
            result.failed[name] = PackageFailure(error=e, log_path=getattr(e, "log_path", None))
            return NodeOutcome.FAILED
        logger.info("%s: %s", name, outcome.value)
        return outcome

    def _finish(self, result: ScheduleResult) -> None:
        for name in self.graph.names:
            result.outcomes.setdefault(name, NodeOutcome.NOT_ATTEMPTED)


__all__ = ["BuildFn", "BuildScheduler", "PackageFailure", "ScheduleResult"]
