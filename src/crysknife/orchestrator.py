"""Batch driver running generate/apply/clear over every in-scope file.

Rules are resolved for every candidate before any file is touched, so a
config error aborts the run up front. Files are then processed independently
on a thread pool; a failing file never cancels the others and results are
reported sorted by path.
"""

from __future__ import annotations

import logging
import os
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import CrysknifeError
from .patches.store import PatchStore
from .policy.predicates import FactSet
from .policy.rules import RuleEngine, config_paths
from .settings import Settings
from .tools.applier import FileAction, PatchApplier, emit_patch_event
from .tools.conflicts import ConflictReport
from .tools.generator import PatchGenerator
from .tools.matcher import FuzzyMatcher, NoMatchFoundError
from .tools.sandbox import Sandbox

LOGGER = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class FileJob:
    """One file to process: its store key and where it lives in the engine tree."""

    target_path: str
    destination: str
    file: Path


@dataclass(slots=True)
class FileOutcome:
    target_path: str
    action: FileAction
    status: OutcomeStatus
    message: str = ""
    destination: Optional[str] = None
    version: Optional[int] = None
    conflict: Optional[ConflictReport] = None
    report_path: Optional[Path] = None

    @property
    def failed(self) -> bool:
        return self.status in {OutcomeStatus.CONFLICT, OutcomeStatus.FAILED}

    @property
    def quiet(self) -> bool:
        return self.status in {OutcomeStatus.UNCHANGED, OutcomeStatus.SKIPPED}


@dataclass(slots=True)
class RunSummary:
    """Aggregated outcomes of one action over the whole tree."""

    action: FileAction
    outcomes: List[FileOutcome] = field(default_factory=list)
    written: List[Path] = field(default_factory=list)
    sandbox_root: Optional[Path] = None

    @property
    def failures(self) -> List[FileOutcome]:
        return [outcome for outcome in self.outcomes if outcome.failed]

    @property
    def updated(self) -> List[FileOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is OutcomeStatus.UPDATED]

    @property
    def exit_code(self) -> int:
        return 1 if self.failures else 0


class Orchestrator:
    """Wire the store, rule engine, matcher and applier for one invocation."""

    def __init__(self, settings: Settings, rules: RuleEngine, *, sandbox: Sandbox | None = None) -> None:
        self.settings = settings
        self.rules = rules
        self.sandbox = sandbox or Sandbox()
        self.store = PatchStore(settings.patch_root, sandbox=self.sandbox)
        self.matcher = FuzzyMatcher(
            content_tolerance=settings.content_tolerance,
            line_tolerance=settings.line_tolerance,
            similarity=settings.line_similarity,
        )
        self.applier = PatchApplier(settings.tag, sandbox=self.sandbox)
        self.generator = PatchGenerator(self.store, self.applier.syntax, patch_context=settings.patch_context)
        self.facts = FactSet(destination_root=settings.target_root, defines=dict(settings.defines))

    @classmethod
    def from_settings(cls, settings: Settings) -> "Orchestrator":
        """Load the plugin's rule files and pick live or dry-run output routing."""
        rules = RuleEngine.from_files(config_paths(settings.patch_root), defines=settings.defines)
        sandbox = Sandbox()
        if settings.dry_run:
            root = settings.sandbox_root or Path(tempfile.mkdtemp(prefix="crysknife-dry-run-"))
            sandbox = Sandbox(root)
            LOGGER.info("Dry run: writes are redirected to %s", sandbox.root)
        return cls(settings, rules, sandbox=sandbox)

    def _stored_destinations(self) -> Dict[str, str]:
        """Map engine-relative destinations back to their stored target paths."""
        reverse: Dict[str, str] = {}
        for target_path in self.store.paths():
            resolution = self.rules.evaluate(target_path, self.facts)
            reverse.setdefault(resolution.destination, target_path)
        return reverse

    def _scan_engine_files(self) -> List[str]:
        root = self.settings.target_root
        found: list[str] = []
        for directory, subdirs, files in os.walk(root):
            subdirs.sort()
            for name in sorted(files):
                path = Path(directory) / name
                if self.settings.scans(path):
                    found.append(path.relative_to(root).as_posix())
        return found

    def plan(self, action: FileAction) -> Tuple[List[FileJob], List[FileOutcome]]:
        """Resolve every candidate file; returns jobs plus rule-skipped outcomes."""

        root = self.settings.target_root
        if not root.is_dir():
            raise FileNotFoundError(f"Engine root not found: {root}")

        if action is FileAction.GENERATE:
            reverse = self._stored_destinations()
            candidates = [(reverse.get(destination, destination), destination) for destination in self._scan_engine_files()]
        else:
            candidates = [(target_path, None) for target_path in self.store.paths()]

        jobs: list[FileJob] = []
        skipped: list[FileOutcome] = []
        for target_path, scanned in sorted(candidates):
            if not self.settings.selects(target_path):
                continue
            resolution = self.rules.evaluate(target_path, self.facts)
            if resolution.skip:
                LOGGER.debug("Skipping %s by rule", target_path)
                skipped.append(
                    FileOutcome(target_path=target_path, action=action, status=OutcomeStatus.SKIPPED, message="skipped by rule")
                )
                continue
            destination = scanned or resolution.destination
            jobs.append(FileJob(target_path=target_path, destination=destination, file=root / destination))
        return jobs, skipped

    def process(self, job: FileJob, action: FileAction) -> FileOutcome:
        """Run ``action`` on one file, turning per-file errors into outcomes."""

        outcome = FileOutcome(target_path=job.target_path, action=action, status=OutcomeStatus.UNCHANGED, destination=job.destination)
        try:
            if action is FileAction.GENERATE:
                self._generate(job, outcome)
            elif action is FileAction.APPLY:
                self._apply(job, outcome)
            else:
                self._clear(job, outcome)
        except NoMatchFoundError as error:
            outcome.status = OutcomeStatus.CONFLICT
            outcome.message = str(error)
            outcome.conflict = error.report
            if self.settings.conflict_dir is not None:
                try:
                    outcome.report_path = error.report.write(self.settings.conflict_dir, sandbox=self.sandbox)
                except OSError as write_error:
                    LOGGER.warning("Unable to write conflict report for %s: %s", job.target_path, write_error)
        except (CrysknifeError, OSError, UnicodeDecodeError) as error:
            LOGGER.debug("Failed to %s %s", action.value, job.target_path, exc_info=True)
            outcome.status = OutcomeStatus.FAILED
            outcome.message = str(error)
        return outcome

    def _generate(self, job: FileJob, outcome: FileOutcome) -> None:
        try:
            text = self.sandbox.read_text(job.file)
        except UnicodeDecodeError:
            LOGGER.debug("Skipping non UTF-8 file %s", job.file)
            return
        if not self.applier.syntax.mentions(text):
            return
        result = self.generator.generate(text, job.target_path)
        if result.version is not None:
            outcome.status = OutcomeStatus.UPDATED
            outcome.version = result.version.order
            outcome.message = f"stored version {result.version.order}"
            emit_patch_event(
                "file.generate",
                path=job.target_path,
                version=result.version.order,
                segments=len(result.records),
                dry_run=self.sandbox.dry_run,
            )

    def _apply(self, job: FileJob, outcome: FileOutcome) -> None:
        if not self.sandbox.exists(job.file):
            raise FileNotFoundError(f"Target file not found: {job.file}")
        version_set = self.store.load(job.target_path)
        if not version_set.versions:
            return
        change = self.applier.apply_file(job.file, version_set, self.matcher)
        outcome.version = change.version
        if change.changed:
            outcome.status = OutcomeStatus.UPDATED
            outcome.message = f"applied version {change.version}"

    def _clear(self, job: FileJob, outcome: FileOutcome) -> None:
        if not self.sandbox.exists(job.file):
            raise FileNotFoundError(f"Target file not found: {job.file}")
        change = self.applier.clear_file(job.file)
        if change.changed:
            outcome.status = OutcomeStatus.UPDATED
            outcome.message = "cleared"

    def run(self, action: FileAction) -> RunSummary:
        jobs, outcomes = self.plan(action)
        LOGGER.debug("%s: %d file(s) in scope", action.value, len(jobs))

        executor = ThreadPoolExecutor(max_workers=self.settings.worker_count(), thread_name_prefix="crysknife")
        try:
            futures: Dict[Future[FileOutcome], FileJob] = {executor.submit(self.process, job, action): job for job in jobs}
            for future in as_completed(futures):
                outcomes.append(future.result())
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted; waiting for running files to finish")
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        outcomes.sort(key=lambda outcome: outcome.target_path)
        return RunSummary(
            action=action,
            outcomes=outcomes,
            written=self.sandbox.written,
            sandbox_root=self.sandbox.root,
        )


__all__ = [
    "FileJob",
    "FileOutcome",
    "Orchestrator",
    "OutcomeStatus",
    "RunSummary",
]
