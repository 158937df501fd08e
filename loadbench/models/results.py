"""
Result Models

Per-worker artifacts as produced by the load-generation workers, and the
merged run-level summary produced by the aggregator.
"""

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class PerWorkerSummary(BaseModel):
    """
    Result artifact written by a single worker when it stops successfully.

    ``latency_histogram`` maps a bucket's upper bound (milliseconds) to the
    number of requests whose latency fell in that bucket.
    """

    total_requests: int = Field(0, ge=0, description="Requests sent")
    error_count: int = Field(0, ge=0, description="Failed requests")
    throughput: float = Field(0.0, ge=0, description="Requests per second")
    latency_histogram: Dict[float, int] = Field(
        default_factory=dict, description="Bucket upper bound (ms) -> count"
    )
    avg_latency_ms: float = Field(0.0, ge=0, description="Mean latency")
    min_latency_ms: float = Field(0.0, ge=0, description="Min latency")
    max_latency_ms: float = Field(0.0, ge=0, description="Max latency")
    error_codes: Dict[str, int] = Field(
        default_factory=dict, description="Response code -> error count"
    )


class RegionSummary(BaseModel):
    """Metrics for the workers of one region."""

    model_config = ConfigDict(frozen=True)

    region: str
    worker_count: int
    total_requests: int
    error_count: int
    throughput: float
    p50_ms: float
    p90_ms: float
    p99_ms: float


class ResultSummary(BaseModel):
    """
    Merged run-level metrics.

    Write-once: built by the aggregator from the successful workers'
    artifacts and attached to the run when it completes.
    """

    model_config = ConfigDict(frozen=True)

    worker_count: int = Field(..., description="Workers that contributed")
    total_requests: int = Field(..., description="Total requests")
    error_count: int = Field(..., description="Total errors")
    success_rate: float = Field(..., description="Successful / total requests")
    throughput: float = Field(..., description="Requests per second, all workers")

    avg_latency_ms: float = Field(0.0, description="Request-weighted mean latency")
    min_latency_ms: float = Field(0.0, description="Min latency")
    max_latency_ms: float = Field(0.0, description="Max latency")
    p50_ms: float = Field(0.0, description="50th percentile")
    p90_ms: float = Field(0.0, description="90th percentile")
    p99_ms: float = Field(0.0, description="99th percentile")

    error_codes: Dict[str, int] = Field(default_factory=dict)
    per_region: List[RegionSummary] = Field(default_factory=list)
