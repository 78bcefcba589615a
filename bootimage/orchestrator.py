from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .build_config import BuildConfig, ConfigError, Env, TargetProfile
from .lib.command import CommandError
from .lib.host import HostPlatform

logger = logging.getLogger(__name__)


class TaskFailed(RuntimeError):
    """A task body (or a forked subtree) finished with a nonzero status."""

    def __init__(self, task: str, status: int) -> None:
        self.task = task
        self.status = status
        super().__init__(f"Task {task} failed with status {status}")


@dataclass(frozen=True)
class RunTask:
    """Delegation to other tasks.

    fork=False runs them inline in the caller's flow. fork=True runs them in
    a child flow with its own memo; parallel=True gives each name its own
    child flow on a worker thread.
    """

    names: Tuple[str, ...]
    fork: bool = False
    parallel: bool = False


@dataclass(frozen=True)
class TaskContext:
    task: str
    env: Env
    args: Tuple[str, ...]
    cfg: BuildConfig
    host: HostPlatform
    dry_run: bool = False
    member: Optional[TargetProfile] = None


Action = Callable[[TaskContext], Optional[int]]


@dataclass(frozen=True)
class Task:
    name: str
    description: str = ""
    action: Optional[Action] = None
    run_task: Optional[RunTask] = None
    dependencies: Tuple[str, ...] = ()
    cleanup: Optional[str] = None
    workspace: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    private: bool = False


@dataclass(frozen=True)
class RunResult:
    entry: str
    status: int
    ran: List[str]
    cleanups: List[str]


class _Flow:
    """Memo of tasks already started in one (possibly forked) flow."""

    def __init__(self, label: str) -> None:
        self.label = label
        self.started: Set[str] = set()


class Journal:
    """Run-wide, thread-safe history of task starts and cleanups fired."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.ran: List[str] = []
        self.cleanups: List[str] = []

    def mark(self) -> int:
        with self._lock:
            return len(self.ran)

    def record(self, name: str) -> None:
        with self._lock:
            self.ran.append(name)

    def record_cleanup(self, name: str) -> None:
        with self._lock:
            self.cleanups.append(name)

    def ran_since(self, mark: int, name: str) -> bool:
        with self._lock:
            return name in self.ran[mark:]


def _severity(status: int) -> int:
    # A child killed by signal N reports -N; rank it like a shell would (128+N).
    return 128 - status if status < 0 else status


def _status_of(exc: BaseException) -> int:
    if isinstance(exc, TaskFailed):
        return exc.status
    if isinstance(exc, CommandError):
        return exc.returncode or 1
    return 1


class Orchestrator:
    """Runs named tasks from a static dependency graph.

    Guarantees, per run:
    - every dependency of a task completes before the task's body starts
    - a task runs at most once per flow, however many paths reach it
    - a task's cleanup runs exactly once after its body and delegated
      subtree, on success, failure or interruption
    """

    def __init__(
        self,
        tasks: Sequence[Task],
        *,
        cfg: BuildConfig,
        host: HostPlatform,
        env: Optional[Env] = None,
        dry_run: bool = False,
    ) -> None:
        self.tasks: Dict[str, Task] = {}
        for t in tasks:
            if t.name in self.tasks:
                raise ConfigError(f"Duplicate task: {t.name}")
            self.tasks[t.name] = t
        self.cfg = cfg
        self.host = host
        self.env = env if env is not None else cfg.env()
        self.dry_run = dry_run
        self.journal = Journal()
        self._args: Tuple[str, ...] = ()
        self._validate()

    # graph

    def _edges(self, task: Task) -> List[str]:
        out = list(task.dependencies)
        if task.run_task is not None:
            out += list(task.run_task.names)
        return out

    def _validate(self) -> None:
        for t in self.tasks.values():
            refs = self._edges(t) + ([t.cleanup] if t.cleanup else [])
            for ref in refs:
                if ref not in self.tasks:
                    raise ConfigError(f"Task {t.name} references unknown task {ref}")

        done: Set[str] = set()

        def visit(name: str, path: Tuple[str, ...]) -> None:
            if name in path:
                raise ConfigError(f"Task cycle: {' -> '.join(path + (name,))}")
            if name in done:
                return
            for ref in self._edges(self.tasks[name]):
                visit(ref, path + (name,))
            done.add(name)

        for name in self.tasks:
            visit(name, ())

    def closure(self, name: str) -> List[str]:
        """Every task `name` can execute, each after everything it waits on."""

        if name not in self.tasks:
            raise ConfigError(f"Unknown task: {name}")
        order: List[str] = []

        def visit(n: str) -> None:
            if n in order:
                return
            t = self.tasks[n]
            for dep in t.dependencies:
                visit(dep)
            if t.run_task is not None:
                for sub in t.run_task.names:
                    visit(sub)
            order.append(n)
            if t.cleanup:
                visit(t.cleanup)

        visit(name)
        return order

    # execution

    def entry(self, name: str) -> Task:
        """Look up an invocable task."""

        task = self.tasks.get(name)
        if task is None:
            raise ConfigError(f"Unknown task: {name}")
        if task.private:
            raise ConfigError(f"Task {name} is private and cannot be invoked directly")
        return task

    def run(self, name: str, args: Sequence[str] = ()) -> RunResult:
        """Run entry point `name`; raises TaskFailed on a nonzero status."""

        self.entry(name)
        self.journal = Journal()
        self._args = tuple(args)
        logger.info("=== Entry point: %s ===", name)
        logger.debug("Plan: %s", ", ".join(self.closure(name)))
        self._run(name, self.env, _Flow(name))
        return RunResult(entry=name, status=0, ran=list(self.journal.ran), cleanups=list(self.journal.cleanups))

    def _run(self, name: str, env: Env, flow: _Flow, *, force: bool = False) -> None:
        if name in flow.started and not force:
            logger.debug("[%s] skip %s (already ran)", flow.label, name)
            return
        flow.started.add(name)
        task = self.tasks[name]

        for dep in task.dependencies:
            self._run(dep, env, flow)

        task_env = env.child(task.env)
        mark = self.journal.mark()
        self.journal.record(name)
        logger.info("[%s] Running task %s", flow.label, name)

        if task.cleanup is None:
            self._body(task, task_env, flow)
            return

        try:
            self._body(task, task_env, flow)
        except BaseException:
            self._cleanup(task, task_env, flow, mark, failing=True)
            raise
        self._cleanup(task, task_env, flow, mark, failing=False)

    def _cleanup(self, task: Task, env: Env, flow: _Flow, mark: int, *, failing: bool) -> None:
        cleanup = task.cleanup
        assert cleanup is not None
        if self.journal.ran_since(mark, cleanup):
            logger.debug("[%s] cleanup %s already ran for %s", flow.label, cleanup, task.name)
            return

        logger.info("[%s] Running cleanup task %s for %s", flow.label, cleanup, task.name)
        self.journal.record_cleanup(cleanup)
        try:
            self._run(cleanup, env, flow, force=True)
        except Exception:
            if not failing:
                raise
            # The original failure is what the caller needs to see.
            logger.exception("[%s] Cleanup task %s failed", flow.label, cleanup)

    def _body(self, task: Task, env: Env, flow: _Flow) -> None:
        if task.action is not None:
            status = self._call_action(task, env)
            if status:
                raise TaskFailed(task.name, status)

        if task.run_task is not None:
            self._delegate(task, env, flow)

    def _call_action(self, task: Task, env: Env) -> int:
        assert task.action is not None
        members: List[Optional[TargetProfile]] = list(self.cfg.members) if task.workspace else [None]
        worst = 0
        for member in members:
            ctx = TaskContext(
                task=task.name,
                env=env,
                args=self._args,
                cfg=self.cfg,
                host=self.host,
                dry_run=self.dry_run,
                member=member,
            )
            try:
                status = task.action(ctx) or 0
            except CommandError as e:
                raise TaskFailed(task.name, _status_of(e)) from e
            if member is not None and status:
                logger.warning("Task %s failed for member %s (status=%s)", task.name, member.key, status)
            worst = max(worst, status, key=_severity)
        return worst

    def _delegate(self, task: Task, env: Env, flow: _Flow) -> None:
        rt = task.run_task
        assert rt is not None

        if not rt.fork:
            for sub in rt.names:
                self._run(sub, env, flow)
            return

        if rt.parallel and len(rt.names) > 1:
            self._fork_parallel(task, env, flow)
            return

        child = _Flow(f"{flow.label}/{task.name}")
        try:
            for sub in rt.names:
                self._run(sub, env, child)
        except ConfigError:
            raise
        except Exception as e:
            logger.error("[%s] forked flow failed: %s", child.label, e)
            raise TaskFailed(task.name, _status_of(e)) from e

    def _fork_parallel(self, task: Task, env: Env, flow: _Flow) -> None:
        rt = task.run_task
        assert rt is not None

        def run_forked(sub: str) -> None:
            self._run(sub, env, _Flow(f"{flow.label}/{task.name}/{sub}"))

        with ThreadPoolExecutor(max_workers=len(rt.names)) as pool:
            futures = [pool.submit(run_forked, sub) for sub in rt.names]
        # Leaving the pool waits for every subtree, whichever finishes first.

        failures = [(sub, f.exception()) for sub, f in zip(rt.names, futures) if f.exception() is not None]
        for sub, exc in failures:
            logger.error("[%s] parallel subtree %s failed: %s", flow.label, sub, exc)
        if failures:
            sub, exc = failures[0]
            if isinstance(exc, ConfigError):
                raise exc
            raise TaskFailed(task.name, _status_of(exc)) from exc
