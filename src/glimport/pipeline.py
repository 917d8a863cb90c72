"""Dependency-ordered stage execution.

A ``StageGraph`` is an arena of stages addressed by integer handles. A stage
can only depend on stages added before it, so the graph is acyclic by
construction and insertion order is a valid topological order.

``PipelineRun`` is the single execution core. ``step()`` does one bounded unit
of work (start a stage, or advance its finalize phase by one record);
synchronous, per-frame and asyncio drivers all call it.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    ClassVar,
    Generator,
    Generic,
    Iterable,
    Iterator,
    Mapping,
    Sequence,
    TypeVar,
)

from glimport.errors import GlimportError, PipelineCancelled, PipelineError, StageError
from glimport.models import GltfAsset
from glimport.resolver import ResourceResolver
from glimport.settings import ImportSettings
from glimport.warning_policy import WarningPolicy

T = TypeVar("T")
R = TypeVar("R")

ProgressObserver = Callable[[str, float], None]
Finalizer = Generator[float, None, list]


@dataclass
class StageContext:
    """Everything a stage may read besides its upstream results."""

    asset: GltfAsset
    settings: ImportSettings
    resolver: ResourceResolver
    bin_chunk: memoryview | None = None
    warning_policy: WarningPolicy | None = None


class Stage(ABC):
    """A unit of conversion work.

    ``prepare`` is the blocking phase and may fan out over a thread pool.
    ``finalize`` is a generator yielding progress fractions; its return value
    is the stage result, one entry per record of ``section``.
    """

    name: ClassVar[str]
    depends_on: ClassVar[tuple[str, ...]] = ()
    section: ClassVar[str | None] = None
    # result holds views into its inputs; input release waits for our consumers too
    borrows_input: ClassVar[bool] = False

    def records(self, ctx: StageContext) -> list:
        return getattr(ctx.asset, self.section) if self.section else []

    def prepare(self, ctx: StageContext, inputs: Mapping[str, list]) -> Any:
        return None

    @abstractmethod
    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        ...

    def release(self, ctx: StageContext, result: list) -> None:
        """Drop resources held by ``result`` once no consumer needs them.

        Also called with whatever the stage produced when a run aborts after
        the stage started.
        """


class StageGraph:
    def __init__(self, stages: Iterable[Stage] = ()) -> None:
        self._stages: list[Stage] = []
        self._handles: dict[str, int] = {}
        self._dependencies: list[tuple[int, ...]] = []
        self._dependents: list[list[int]] = []
        for stage in stages:
            self.add(stage)

    def add(self, stage: Stage) -> int:
        """Append ``stage`` and return its handle.

        Raises:
            PipelineError: On a duplicate name or a dependency that has not been added.
        """
        if stage.name in self._handles:
            raise PipelineError(f"Duplicate stage name: {stage.name!r}")
        deps: list[int] = []
        for dep in stage.depends_on:
            if dep not in self._handles:
                raise PipelineError(
                    f"Stage {stage.name!r} depends on {dep!r}, which has not been added"
                )
            deps.append(self._handles[dep])
        handle = len(self._stages)
        self._stages.append(stage)
        self._handles[stage.name] = handle
        self._dependencies.append(tuple(deps))
        self._dependents.append([])
        for dep in deps:
            self._dependents[dep].append(handle)
        return handle

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def stage(self, handle: int) -> Stage:
        return self._stages[handle]

    def handle(self, name: str) -> int:
        try:
            return self._handles[name]
        except KeyError:
            raise PipelineError(f"Unknown stage: {name!r}") from None

    def dependencies(self, handle: int) -> tuple[int, ...]:
        return self._dependencies[handle]

    def dependents(self, handle: int) -> tuple[int, ...]:
        return tuple(self._dependents[handle])

    def consumers(self, handle: int) -> frozenset[int]:
        """Stages that read ``handle``'s result, directly or through a borrowing stage."""
        found: set[int] = set()
        pending = list(self._dependents[handle])
        while pending:
            current = pending.pop()
            if current in found:
                continue
            found.add(current)
            if self._stages[current].borrows_input:
                pending.extend(self._dependents[current])
        return frozenset(found)


@dataclass(frozen=True)
class Progress:
    stage: str
    fraction: float


class PipelineRun(Generic[R]):
    """A resumable, cancellable run over a ``StageGraph``.

    ``assemble`` turns the completed run into the final result once every
    stage has finished.
    """

    def __init__(
        self,
        graph: StageGraph,
        context: StageContext,
        *,
        assemble: Callable[[PipelineRun], R] | None = None,
        observers: Sequence[ProgressObserver] = (),
    ) -> None:
        self.graph = graph
        self.context = context
        self._assemble = assemble
        self._observers: list[ProgressObserver] = list(observers)
        size = len(graph)
        self._results: list[list | None] = [None] * size
        self._completed = [False] * size
        self._started = [False] * size
        self._released = [False] * size
        self._consumers = [graph.consumers(h) for h in range(size)]
        self._cursor = 0
        self._active: Finalizer | None = None
        self._cancelled = False
        self._done = False
        self._result: R | None = None
        self.error: GlimportError | None = None

    def add_observer(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    @property
    def done(self) -> bool:
        return self._done

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def result(self) -> R | None:
        if not self._done:
            raise PipelineError("Pipeline run has not completed")
        return self._result

    @property
    def current_stage(self) -> str | None:
        if self._done or self._cursor >= len(self.graph):
            return None
        return self.graph.stage(self._cursor).name

    def cancel(self) -> None:
        """Request cancellation; honoured before the next stage starts."""
        self._cancelled = True

    def is_ready(self, name: str) -> bool:
        """True once every dependency of stage ``name`` has completed."""
        handle = self.graph.handle(name)
        return all(self._completed[dep] for dep in self.graph.dependencies(handle))

    def is_completed(self, name: str) -> bool:
        return self._completed[self.graph.handle(name)]

    def is_released(self, name: str) -> bool:
        return self._released[self.graph.handle(name)]

    def results(self, name: str) -> list:
        handle = self.graph.handle(name)
        if not self._completed[handle]:
            raise PipelineError(f"Stage {name!r} has not completed")
        return self._results[handle]

    def step(self) -> Progress | None:
        """Advance the run by one unit of work.

        Returns the progress made, or None once the run has finished (or
        previously failed).

        Raises:
            GlimportError: The first failure; the run is aborted and every
                held resource released.
        """
        if self._done or self.error is not None:
            return None
        try:
            if self._active is None:
                if self._cursor == len(self.graph):
                    self._finish()
                    return None
                return self._start(self._cursor)
            return self._advance(self._cursor)
        except Exception as e:
            error = self._wrap(e)
            self.error = error
            self._active = None
            self._release_all()
            if error is e:
                raise
            raise error from e

    def __iter__(self) -> Iterator[Progress]:
        while (progress := self.step()) is not None:
            yield progress

    def run_sync(self) -> R | None:
        """Drive the run to completion on the calling thread."""
        for _ in self:
            pass
        return self.result

    def _wrap(self, e: Exception) -> GlimportError:
        stage_name = self.current_stage
        if isinstance(e, GlimportError):
            if e.stage is None:
                e.stage = stage_name
            return e
        error = StageError(f"Stage {stage_name!r} failed: {e}")
        error.stage = stage_name
        return error

    def _start(self, handle: int) -> Progress:
        stage = self.graph.stage(handle)
        if self._cancelled:
            raise PipelineCancelled(f"Run cancelled before stage {stage.name!r}")
        if not self.is_ready(stage.name):
            waiting = [
                self.graph.stage(dep).name
                for dep in self.graph.dependencies(handle)
                if not self._completed[dep]
            ]
            raise PipelineError(f"Stage {stage.name!r} is not ready; waiting for {waiting}")
        self._started[handle] = True
        inputs = self._inputs(handle)
        self._notify(stage.name, 0.0)
        prepared = stage.prepare(self.context, inputs)
        self._active = stage.finalize(self.context, inputs, prepared)
        return Progress(stage.name, 0.0)

    def _advance(self, handle: int) -> Progress:
        stage = self.graph.stage(handle)
        try:
            fraction = next(self._active)
        except StopIteration as stop:
            self._complete(handle, stop.value if stop.value is not None else [])
            return Progress(stage.name, 1.0)
        if fraction >= 1.0:
            # 1.0 is reported once, on completion
            return self._advance(handle)
        self._notify(stage.name, fraction)
        return Progress(stage.name, fraction)

    def _complete(self, handle: int, result: list) -> None:
        stage = self.graph.stage(handle)
        if stage.section is not None:
            expected = len(stage.records(self.context))
            if len(result) != expected:
                raise PipelineError(
                    f"Stage {stage.name!r} produced {len(result)} results for {expected} records"
                )
        self._active = None
        self._results[handle] = result
        self._completed[handle] = True
        self._notify(stage.name, 1.0)
        self._release_consumed()
        self._cursor += 1

    def _finish(self) -> None:
        self._release_all()
        self._result = self._assemble(self) if self._assemble is not None else None
        self._done = True

    def _inputs(self, handle: int) -> dict[str, list]:
        return {
            self.graph.stage(dep).name: self._results[dep]
            for dep in self.graph.dependencies(handle)
        }

    def _release_consumed(self) -> None:
        for handle, consumers in enumerate(self._consumers):
            if (
                self._completed[handle]
                and not self._released[handle]
                and consumers
                and all(self._completed[c] for c in consumers)
            ):
                self._release(handle)

    def _release_all(self) -> None:
        for handle in range(len(self.graph)):
            if self._started[handle] and not self._released[handle]:
                self._release(handle)

    def _release(self, handle: int) -> None:
        self._released[handle] = True
        self.graph.stage(handle).release(self.context, self._results[handle] or [])

    def _notify(self, stage: str, fraction: float) -> None:
        for observer in self._observers:
            observer(stage, fraction)


def fan_out(fn: Callable[[int, T], Any], items: Sequence[T], max_workers: int) -> list:
    """Apply ``fn(index, item)`` to every item, concurrently when worthwhile.

    Results keep item order; the first exception propagates after all
    submitted work has been joined.
    """
    if max_workers <= 1 or len(items) <= 1:
        return [fn(i, item) for i, item in enumerate(items)]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as executor:
        return list(executor.map(fn, range(len(items)), items))


async def drive_async(run: PipelineRun[R], *, executor: Executor | None = None) -> R | None:
    """Drive ``run`` from an event loop, offloading each step to ``executor``."""
    loop = asyncio.get_running_loop()
    while await loop.run_in_executor(executor, run.step) is not None:
        pass
    return run.result
