"""
Results aggregation.

Per-worker artifacts are merged into one ResultSummary. Counts and
throughput are summed; percentiles are recomputed from the merged latency
histograms since percentiles of differently sized samples cannot be
averaged.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from loadbench.core.interfaces import ArtifactStore
from loadbench.errors import NoArtifacts
from loadbench.models import (
    PerWorkerSummary,
    RegionSummary,
    ResultSummary,
    TestRun,
    WorkerTask,
)

logger = logging.getLogger(__name__)

PERCENTILES = (0.50, 0.90, 0.99)


def merge_histograms(histograms: Iterable[dict[float, int]]) -> dict[float, int]:
    merged: dict[float, int] = {}
    for histogram in histograms:
        for bucket, count in histogram.items():
            merged[float(bucket)] = merged.get(float(bucket), 0) + int(count)
    return merged


def histogram_percentile(histogram: dict[float, int], quantile: float) -> float:
    """
    Nearest-rank percentile over a bucketed histogram.

    Returns the upper bound of the bucket holding the ranked sample, or 0.0
    for an empty histogram.
    """
    total = sum(count for count in histogram.values() if count > 0)
    if total <= 0:
        return 0.0
    # Rounded first so 0.9 * 100 ranks 90, not 91.
    rank = max(1, math.ceil(round(float(quantile) * total, 9)))
    cumulative = 0
    for bucket in sorted(histogram):
        count = histogram[bucket]
        if count <= 0:
            continue
        cumulative += count
        if cumulative >= rank:
            return float(bucket)
    return float(max(histogram))


def _region_summary(region: str, summaries: list[PerWorkerSummary]) -> RegionSummary:
    histogram = merge_histograms(s.latency_histogram for s in summaries)
    p50, p90, p99 = (histogram_percentile(histogram, q) for q in PERCENTILES)
    return RegionSummary(
        region=region,
        worker_count=len(summaries),
        total_requests=sum(s.total_requests for s in summaries),
        error_count=sum(s.error_count for s in summaries),
        throughput=math.fsum(s.throughput for s in summaries),
        p50_ms=p50,
        p90_ms=p90,
        p99_ms=p99,
    )


def merge_artifacts(contributions: list[tuple[str, PerWorkerSummary]]) -> ResultSummary:
    """
    Merge (region, artifact) pairs into a ResultSummary.

    The result does not depend on the order of ``contributions``.
    """
    if not contributions:
        raise NoArtifacts("No successful worker artifacts to aggregate")

    summaries = [summary for _, summary in contributions]
    total_requests = sum(s.total_requests for s in summaries)
    error_count = sum(s.error_count for s in summaries)

    histogram = merge_histograms(s.latency_histogram for s in summaries)
    p50, p90, p99 = (histogram_percentile(histogram, q) for q in PERCENTILES)

    with_traffic = [s for s in summaries if s.total_requests > 0]
    avg_latency = (
        math.fsum(s.avg_latency_ms * s.total_requests for s in with_traffic)
        / total_requests
        if total_requests > 0
        else 0.0
    )

    error_codes: dict[str, int] = {}
    for summary in summaries:
        for code, count in summary.error_codes.items():
            error_codes[str(code)] = error_codes.get(str(code), 0) + int(count)

    by_region: dict[str, list[PerWorkerSummary]] = {}
    for region, summary in contributions:
        by_region.setdefault(region, []).append(summary)

    return ResultSummary(
        worker_count=len(summaries),
        total_requests=total_requests,
        error_count=error_count,
        success_rate=(
            (total_requests - error_count) / total_requests if total_requests > 0 else 0.0
        ),
        throughput=math.fsum(s.throughput for s in summaries),
        avg_latency_ms=avg_latency,
        min_latency_ms=min((s.min_latency_ms for s in with_traffic), default=0.0),
        max_latency_ms=max((s.max_latency_ms for s in with_traffic), default=0.0),
        p50_ms=p50,
        p90_ms=p90,
        p99_ms=p99,
        error_codes=dict(sorted(error_codes.items())),
        per_region=[
            _region_summary(region, by_region[region]) for region in sorted(by_region)
        ],
    )


@dataclass
class AggregationOutcome:
    summary: ResultSummary
    contributing: list[WorkerTask]
    unavailable: list[tuple[WorkerTask, str]] = field(default_factory=list)


class ResultsAggregator:
    """Fetches the artifacts of a run's successful workers and merges them."""

    def __init__(
        self,
        artifact_store: ArtifactStore,
        *,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._artifacts = artifact_store
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._sleep = sleep

    async def _fetch(self, task: WorkerTask) -> PerWorkerSummary:
        location = str(task.artifact_location or "")
        attempt = 1
        while True:
            try:
                return await self._artifacts.get_artifact(location)
            except Exception as e:
                logger.warning(
                    "Artifact fetch for %s failed (attempt %d/%d): %s",
                    task.handle,
                    attempt,
                    self.retry_attempts,
                    e,
                )
                if attempt >= self.retry_attempts:
                    raise
            attempt += 1
            await self._sleep(self.retry_delay_seconds)

    async def aggregate(self, run: TestRun) -> AggregationOutcome:
        """
        Build the summary from every task that stopped with an artifact.

        Tasks whose artifact cannot be fetched are reported in
        ``unavailable`` and left out. Raises NoArtifacts when nothing could
        be aggregated.
        """
        contributions: list[tuple[str, PerWorkerSummary]] = []
        contributing: list[WorkerTask] = []
        unavailable: list[tuple[WorkerTask, str]] = []

        for task in run.tasks:
            if not task.succeeded:
                continue
            try:
                summary = await self._fetch(task)
            except Exception as e:
                unavailable.append((task, f"{type(e).__name__}: {e}"))
                continue
            contributions.append((task.region, summary))
            contributing.append(task)

        summary = merge_artifacts(contributions)
        logger.info(
            "Aggregated %d artifact(s) for run %s: %d requests, %d errors, p99=%.1fms",
            len(contributions),
            run.test_id,
            summary.total_requests,
            summary.error_count,
            summary.p99_ms,
        )
        return AggregationOutcome(
            summary=summary, contributing=contributing, unavailable=unavailable
        )
