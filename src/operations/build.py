"""Lifecycle script execution in dependency order.

``BuildScheduler`` walks the package graph topologically: a package's script
starts only once every dependency in the batch has finished successfully,
and never when a package it needs is not installed. Independent packages run
concurrently. A failure blocks its dependents but never its siblings.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from constants import Constants
from errors import BuildError
from common.logging_utils import Timer, extra_context

logger = logging.getLogger(__name__)


@dataclass
class BuildTask:
    """One package script to run."""
    uuid: str
    name: str
    path: Path
    script: Optional[str] = None
    deps: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class BuildOutcome:
    uuid: str
    returncode: int
    log_path: Optional[Path] = None


class ScriptRunner:
    """Run one script as a subprocess with output captured to a log file."""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)

    def log_path(self, task: BuildTask, phase: str) -> Path:
        return self.log_dir / f"{task.name}-{task.uuid[:8]}-{phase}.log"

    def run(self, task: BuildTask, phase: str = Constants.SCRIPT_BUILD) -> BuildOutcome:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_path(task, phase)
        argv = shlex.split(task.script or "")
        with open(log_path, "w", encoding="utf-8") as log:
            log.write(f"# {phase} {task.name} at {datetime.now(timezone.utc).isoformat()}\n# $ {task.script}\n")
            log.flush()
            try:
                proc = subprocess.run(  # noqa: S603
                    argv,
                    cwd=str(task.path),
                    env=task.env or None,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
                returncode = proc.returncode
            except OSError as exc:
                log.write(f"could not start: {exc}\n")
                returncode = 127
        return BuildOutcome(uuid=task.uuid, returncode=returncode, log_path=log_path)


class BuildScheduler:
    """Run a batch of tasks respecting their dependencies.

    Args:
        runner: executes individual scripts.
        max_workers: upper bound on concurrently running scripts.
        cancel_check: called before each launch; raises to stop scheduling.
    """

    def __init__(
        self,
        runner: ScriptRunner,
        max_workers: int = Constants.MAX_WORKERS,
        cancel_check: Optional[Callable[[], None]] = None,
    ):
        self.runner = runner
        self.max_workers = max(1, max_workers)
        self.cancel_check = cancel_check

    def run(
        self,
        tasks: Dict[str, BuildTask],
        phase: str = Constants.SCRIPT_BUILD,
        blocked: Optional[Dict[str, str]] = None,
    ) -> Tuple[List[str], List[BuildError]]:
        """Execute every task whose dependencies succeed.

        Args:
            tasks: identifier -> task.
            phase: build or test.
            blocked: tasks that must not start, mapped to the name of the
                missing package blocking them. Their dependents are blocked
                by the same package.

        Returns:
            (identifiers that completed, errors for failed or blocked tasks)
        """
        deps: Dict[str, Set[str]] = {u: {d for d in t.deps if d in tasks and d != u} for u, t in tasks.items()}
        done: List[str] = []
        errors: List[BuildError] = []
        finished: Set[str] = set()
        failed: Dict[str, str] = {}
        running: Dict[Future, str] = {}

        def _ready() -> List[str]:
            waiting = [
                u for u in tasks
                if u not in finished and u not in failed and u not in running.values()
                and deps[u] <= finished
            ]
            return sorted(waiting, key=lambda u: (tasks[u].name, u))

        def _block_dependents(root: str, blocker: str) -> None:
            frontier = [root]
            while frontier:
                culprit = frontier.pop()
                for u in sorted(tasks, key=lambda u: (tasks[u].name, u)):
                    if culprit in deps[u] and u not in failed and u not in finished:
                        failed[u] = blocker
                        errors.append(BuildError(tasks[u].name, phase=phase, blocked_by=blocker))
                        frontier.append(u)

        blocked = {u: name for u, name in (blocked or {}).items() if u in tasks}
        for uuid in sorted(blocked, key=lambda u: (tasks[u].name, u)):
            if uuid not in failed:
                failed[uuid] = blocked[uuid]
                errors.append(BuildError(tasks[uuid].name, phase=phase, blocked_by=blocked[uuid]))
                logger.error("%s of %s skipped: %s is not installed", phase, tasks[uuid].name, blocked[uuid])
                _block_dependents(uuid, blocked[uuid])

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            while True:
                for uuid in _ready():
                    if len(running) >= self.max_workers:
                        break
                    task = tasks[uuid]
                    if not task.script:
                        finished.add(uuid)
                        done.append(uuid)
                        continue
                    if self.cancel_check is not None:
                        self.cancel_check()
                    logger.info("Running %s script of %s", phase, task.name)
                    running[executor.submit(self._timed, task, phase)] = uuid
                if not running:
                    if _ready():
                        continue
                    break
                completed, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in completed:
                    uuid = running.pop(future)
                    outcome = future.result()
                    if outcome.returncode == 0:
                        finished.add(uuid)
                        done.append(uuid)
                    else:
                        failed[uuid] = tasks[uuid].name
                        log_path = str(outcome.log_path) if outcome.log_path else None
                        errors.append(BuildError(tasks[uuid].name, phase=phase, returncode=outcome.returncode, log_path=log_path))
                        logger.error("%s of %s failed with exit code %s", phase, tasks[uuid].name, outcome.returncode)
                        _block_dependents(uuid, tasks[uuid].name)

        # tasks stuck on a dependency cycle inside the batch
        for uuid in sorted(set(tasks) - finished - set(failed), key=lambda u: (tasks[u].name, u)):
            blocker = sorted(tasks[d].name for d in deps[uuid] - finished)[0]
            errors.append(BuildError(tasks[uuid].name, phase=phase, blocked_by=blocker))
        return done, errors

    def _timed(self, task: BuildTask, phase: str) -> BuildOutcome:
        with Timer() as timer:
            outcome = self.runner.run(task, phase)
        logger.debug(
            "%s of %s exited with %s",
            phase,
            task.name,
            outcome.returncode,
            extra=extra_context(
                event=phase, component="build", package=task.name,
                outcome="success" if outcome.returncode == 0 else "failure", duration_ms=timer.duration_ms(),
            ),
        )
        return outcome
