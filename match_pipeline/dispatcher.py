from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from common.logging_setup import get_logger
from common.types import CanvasPair

from match_pipeline.broadcast import BroadcastConfig, Collaborators
from match_pipeline.config import PipelineSettings
from match_pipeline.executor import (
    PartitionExecutor,
    ProcessPartitionExecutor,
    SerialPartitionExecutor,
    StageFailure,
)
from match_pipeline.metrics import write_metrics_row
from match_pipeline.pairs import (
    FilePairSource,
    RenderablePairs,
    flatten_pairs,
    render_parameters_url_template_for_run,
)
from match_pipeline.stages import (
    PartitionMatches,
    cleanup_partition,
    match_partition,
    persist_partition,
)


log = get_logger(__name__)


class JobState(str, Enum):
    LOADING = "LOADING"
    DISPATCHED = "DISPATCHED"
    MATCHING = "MATCHING"
    PERSISTING = "PERSISTING"
    CLEANING = "CLEANING"
    DONE = "DONE"
    FAILED = "FAILED"


_ALLOWED = {
    None: {JobState.LOADING},
    JobState.LOADING: {JobState.DISPATCHED, JobState.FAILED},
    JobState.DISPATCHED: {JobState.MATCHING, JobState.FAILED},
    JobState.MATCHING: {JobState.PERSISTING, JobState.FAILED},
    JobState.PERSISTING: {JobState.CLEANING, JobState.FAILED},
    JobState.CLEANING: {JobState.DONE, JobState.FAILED},
    JobState.FAILED: {JobState.CLEANING},
    JobState.DONE: set(),
}


class PairSource(Protocol):
    def load(self) -> List[RenderablePairs]:
        ...


@dataclass
class PipelineReport:
    run_id: str
    state: JobState = JobState.LOADING
    pairs_considered: int = 0
    partitions: int = 0
    matches_derived: int = 0
    matches_saved: int = 0
    partition_saved_counts: List[int] = field(default_factory=list)
    partitions_cleaned: int = 0
    failed_stage: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d


class PipelineFailure(Exception):
    """The job failed; `report` holds what was collected before the failure."""

    def __init__(self, report: PipelineReport, stage: str):
        super().__init__(report, stage)
        self.report = report
        self.stage = stage

    def __str__(self) -> str:
        return f"pipeline failed in {self.stage} stage: {self.report.error}"


def partition_pairs(pairs: Sequence[CanvasPair], num_partitions: int) -> List[List[CanvasPair]]:
    """Split into `num_partitions` contiguous slices; every pair lands in exactly one."""
    if num_partitions < 1:
        raise ValueError("num_partitions must be >= 1")
    n = len(pairs)
    return [
        list(pairs[(i * n) // num_partitions : ((i + 1) * n) // num_partitions])
        for i in range(num_partitions)
    ]


def build_executor(settings: PipelineSettings) -> PartitionExecutor:
    ex = settings.execution
    if ex.executor == "serial":
        return SerialPartitionExecutor(max_retries=ex.max_retries)
    return ProcessPartitionExecutor(workers=ex.workers, max_retries=ex.max_retries)


class PipelineDispatcher:
    """
    Staged job:

        LOADING -> DISPATCHED -> MATCHING -> PERSISTING -> CLEANING -> DONE

    Each stage finishes on every partition before the next starts. A failure
    while loading ends the job without cleanup (no worker ever started). A
    failure while matching or persisting moves to FAILED, still runs cleanup,
    then raises PipelineFailure.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        pair_source: Optional[PairSource] = None,
        executor: Optional[PartitionExecutor] = None,
        collaborators: Optional[Collaborators] = None,
        run_id: Optional[str] = None,
    ):
        self.settings = settings
        self.pair_source = pair_source or FilePairSource(settings.pair_sources)
        self.executor = executor
        self.collaborators = collaborators or Collaborators()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.report = PipelineReport(run_id=self.run_id)
        self.state: Optional[JobState] = None
        self.history: List[JobState] = []
        mf = settings.logging.metrics_file
        self.metrics_path: Optional[Path] = Path(mf) if mf else None

    # -------- public API --------

    def run(self) -> PipelineReport:
        self._transition(JobState.LOADING)
        try:
            documents = self.pair_source.load()
            template = render_parameters_url_template_for_run(documents, self.settings.render)
        except Exception as e:
            self.report.failed_stage = "loading"
            self.report.error = f"{type(e).__name__}: {e}"
            self._transition(JobState.FAILED)
            self._write_summary()
            log.error("failed to load pair list", extra={"extra": {"error": self.report.error}})
            raise PipelineFailure(self.report, "loading") from e

        pairs = flatten_pairs(documents)
        partitions = partition_pairs(pairs, self.settings.execution.partitions)
        broadcast = BroadcastConfig.from_settings(
            self.settings,
            run_id=self.run_id,
            render_template=template,
            collaborators=self.collaborators,
        )
        self.report.pairs_considered = len(pairs)
        self.report.partitions = len(partitions)
        log.info(
            "dispatching pairs",
            extra={
                "extra": {
                    "run_id": self.run_id,
                    "pairs": len(pairs),
                    "partitions": len(partitions),
                    "render_template": template,
                    "cache_root": broadcast.cache_root,
                }
            },
        )
        self._transition(JobState.DISPATCHED)

        executor = self.executor or build_executor(self.settings)
        try:
            self._run_stages(executor, broadcast, partitions)
        finally:
            if self.executor is None:
                executor.close()
        return self.report

    # -------- internals --------

    def _run_stages(
        self,
        executor: PartitionExecutor,
        broadcast: BroadcastConfig,
        partitions: List[List[CanvasPair]],
    ) -> None:
        try:
            self._transition(JobState.MATCHING)
            matched: List[PartitionMatches] = executor.run_stage("match", match_partition, partitions, broadcast)
            self.report.matches_derived = sum(len(m.matches) for m in matched)
            for m in matched:
                self._write_row({
                    "stage": "match",
                    "partition": m.index,
                    "pairs": m.pair_count,
                    "derived": len(m.matches),
                    "cache": m.cache,
                    "tool_ms": m.computer.get("tool_ms"),
                    "elapsed_ms": m.elapsed_ms,
                })

            self._transition(JobState.PERSISTING)
            saved: List[int] = executor.run_stage(
                "persist", persist_partition, [m.matches for m in matched], broadcast
            )
            self._record_saved(saved)
        except StageFailure as e:
            self._fail(e)
            self._transition(JobState.CLEANING)
            self._cleanup(executor, broadcast, len(partitions))
            self._transition(JobState.FAILED)
            self._write_summary()
            raise PipelineFailure(self.report, e.stage) from e

        self._transition(JobState.CLEANING)
        self._cleanup(executor, broadcast, len(partitions))
        self._transition(JobState.DONE)
        self._write_summary()
        log.info("run complete", extra={"extra": self.report.to_dict()})

    def _record_saved(self, saved: List[int]) -> None:
        self.report.partition_saved_counts = list(saved)
        self.report.matches_saved = sum(saved)
        for i, n in enumerate(saved):
            self._write_row({"stage": "persist", "partition": i, "saved": n})
        log.info(
            "saved %d match pairs on %d partitions",
            self.report.matches_saved,
            len(saved),
            extra={"extra": {"run_id": self.run_id}},
        )

    def _fail(self, e: StageFailure) -> None:
        self.report.failed_stage = e.stage
        self.report.error = f"{type(e.cause).__name__}: {e.cause}"
        if e.stage == "match":
            self.report.matches_derived = sum(len(m.matches) for m in e.completed.values())
        elif e.stage == "persist":
            counts = [int(e.completed.get(i, 0)) for i in range(self.report.partitions)]
            self.report.partition_saved_counts = counts
            self.report.matches_saved = sum(counts)
        log.error(
            "stage failed",
            extra={
                "extra": {
                    "run_id": self.run_id,
                    "stage": e.stage,
                    "partition": e.partition_index,
                    "attempts": e.attempts,
                    "error": self.report.error,
                }
            },
        )
        self._transition(JobState.FAILED)

    def _cleanup(self, executor: PartitionExecutor, broadcast: BroadcastConfig, num_partitions: int) -> None:
        try:
            cleaned = executor.run_stage("cleanup", cleanup_partition, [None] * num_partitions, broadcast)
        except StageFailure as e:
            # best effort: partitions cleaned before the failure still count
            log.exception(
                "cleanup failed",
                extra={"extra": {"partition": e.partition_index, "error": repr(e.cause)}},
            )
            cleaned = list(e.completed.values())
        self.report.partitions_cleaned = len(cleaned)
        log.info("cleaned up %d partitions", len(cleaned), extra={"extra": {"run_id": self.run_id}})

    def _transition(self, new: JobState) -> None:
        if new not in _ALLOWED[self.state]:
            raise RuntimeError(f"illegal job state transition {self.state} -> {new}")
        log.info("job state", extra={"extra": {"run_id": self.run_id, "from": getattr(self.state, "value", None), "to": new.value}})
        self.state = new
        self.report.state = new
        self.history.append(new)

    def _write_row(self, row: Dict[str, Any]) -> None:
        if self.metrics_path is not None:
            write_metrics_row(self.metrics_path, {"run_id": self.run_id, **row})

    def _write_summary(self) -> None:
        self._write_row({"stage": "summary", **self.report.to_dict()})
