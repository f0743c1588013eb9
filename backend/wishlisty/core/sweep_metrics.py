from dataclasses import dataclass

from wishlisty.schemas.reservation import SweepSummary


@dataclass
class SweepBucket:
    runs: int = 0
    skipped: int = 0
    errors: int = 0
    processed: int = 0
    notified: int = 0
    failed: int = 0
    latency_total_ms: float = 0.0

    def record(self, duration_ms: float, summary: SweepSummary | None, error: bool) -> None:
        self.runs += 1
        if error:
            self.errors += 1
        if summary is not None:
            self.processed += summary.processed
            self.notified += summary.notified
            self.failed += summary.failed
        self.latency_total_ms += duration_ms

    def snapshot(self) -> dict[str, float | int]:
        avg = self.latency_total_ms / self.runs if self.runs else 0.0
        return {
            "runs": self.runs,
            "skipped": self.skipped,
            "errors": self.errors,
            "processed": self.processed,
            "notified": self.notified,
            "failed": self.failed,
            "avg_latency_ms": round(avg, 2),
        }


class SweepMetrics:
    def __init__(self) -> None:
        self.buckets: dict[str, SweepBucket] = {}

    def bucket(self, name: str) -> SweepBucket:
        return self.buckets.setdefault(name, SweepBucket())

    def record(self, name: str, duration_ms: float, summary: SweepSummary | None = None, error: bool = False) -> None:
        self.bucket(name).record(duration_ms, summary, error)

    def record_skip(self, name: str) -> None:
        self.bucket(name).skipped += 1

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        return {name: bucket.snapshot() for name, bucket in sorted(self.buckets.items())}


sweep_metrics = SweepMetrics()
