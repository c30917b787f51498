"""
Metrics Collection for the Consultation RAG

Tracks consultation latency and outcomes, quota rejections, provider
failures, persistence failures awaiting reconciliation, and document
processing volume.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class ConsultationMetrics:
    """Metrics for a single consultation."""
    user_id: str
    question: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    sources_count: int = 0
    confidence: float = 0
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    total_consultations: int = 0
    successful_consultations: int = 0
    failed_consultations: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Retrieval quality
    total_sources: int = 0
    zero_source_consultations: int = 0
    total_confidence: float = 0

    # Failure classes
    quota_rejections: int = 0
    llm_failures: int = 0
    persistence_failures: int = 0  # answers delivered but not recorded

    # Document processing
    documents_processed: int = 0
    documents_failed: int = 0
    chunks_indexed: int = 0
    total_processing_time_ms: float = 0

    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))
    consultations_by_user: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_consultations == 0:
            return 0
        return self.total_latency_ms / self.total_consultations

    @property
    def p95_latency_ms(self) -> float:
        """95th percentile latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def avg_confidence(self) -> float:
        if self.successful_consultations == 0:
            return 0
        return self.total_confidence / self.successful_consultations

    @property
    def error_rate(self) -> float:
        if self.total_consultations == 0:
            return 0
        return self.failed_consultations / self.total_consultations

    def to_dict(self) -> dict:
        return {
            "consultations": {
                "total": self.total_consultations,
                "successful": self.successful_consultations,
                "failed": self.failed_consultations,
                "error_rate": f"{self.error_rate:.2%}",
                "zero_source": self.zero_source_consultations,
                "avg_confidence": round(self.avg_confidence, 3),
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
            },
            "failures": {
                "quota_rejections": self.quota_rejections,
                "llm_failures": self.llm_failures,
                "persistence_failures": self.persistence_failures,
            },
            "documents": {
                "processed": self.documents_processed,
                "failed": self.documents_failed,
                "chunks_indexed": self.chunks_indexed,
                "avg_time_ms": round(
                    self.total_processing_time_ms / max(self.documents_processed, 1), 2
                ),
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Usage:
        collector = get_metrics_collector()

        with collector.track_consultation(user_id, question) as tracker:
            result = answer_question()
            tracker.set_result(len(result.sources), result.confidence)

        metrics = collector.get_metrics()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._lock = threading.Lock()
        self._history: list[ConsultationMetrics] = []
        self._max_history = 1000
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._history = []
            self._start_time = datetime.now()

    class ConsultationTracker:
        """Context manager for tracking consultation metrics."""

        def __init__(self, collector: 'MetricsCollector', user_id: Optional[str], question: str):
            self.collector = collector
            self.consultation = ConsultationMetrics(
                user_id=user_id or "anonymous",
                question=question[:200],
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.consultation.end_time = time.time()
            self.consultation.latency_ms = (self.consultation.end_time - self.consultation.start_time) * 1000

            if exc_type:
                self.consultation.error = str(exc_val)
                self.collector.record_error(exc_type.__name__)

            self.collector._record_consultation(self.consultation)
            return False

        def set_result(self, sources_count: int, confidence: float):
            self.consultation.sources_count = sources_count
            self.consultation.confidence = confidence

    def track_consultation(self, user_id: Optional[str], question: str) -> ConsultationTracker:
        return self.ConsultationTracker(self, user_id, question)

    def _record_consultation(self, consultation: ConsultationMetrics):
        with self._lock:
            m = self.metrics
            m.total_consultations += 1
            if consultation.error:
                m.failed_consultations += 1
            else:
                m.successful_consultations += 1
                m.total_sources += consultation.sources_count
                m.total_confidence += consultation.confidence
                if consultation.sources_count == 0:
                    m.zero_source_consultations += 1

            m.total_latency_ms += consultation.latency_ms
            m.min_latency_ms = min(m.min_latency_ms, consultation.latency_ms)
            m.max_latency_ms = max(m.max_latency_ms, consultation.latency_ms)
            m.latencies.append(consultation.latency_ms)
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

            m.consultations_by_user[consultation.user_id] += 1

            self._history.append(consultation)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

    def record_error(self, error_type: str):
        """Record an error by type. Known RAG failure classes also bump their counter."""
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1
            if error_type == "QuotaExceededError":
                self.metrics.quota_rejections += 1
            elif error_type == "LLMError":
                self.metrics.llm_failures += 1

    def record_persistence_failure(self):
        with self._lock:
            self.metrics.persistence_failures += 1

    def record_document(self, chunks_count: int, duration_ms: float, success: bool = True):
        with self._lock:
            if success:
                self.metrics.documents_processed += 1
                self.metrics.chunks_indexed += chunks_count
                self.metrics.total_processing_time_ms += duration_ms
            else:
                self.metrics.documents_failed += 1

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        with self._lock:
            return self.metrics.to_dict()

    def get_recent_consultations(self, limit: int = 10) -> list[ConsultationMetrics]:
        return self._history[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time

    def get_user_summary(self) -> dict:
        return {"consultations_by_user": dict(self.metrics.consultations_by_user)}


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
