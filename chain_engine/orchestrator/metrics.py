"""
Post-run metrics for an ExecutionResult.
"""

import json
from typing import Any

from chain_engine.core.models import ExecutionMetrics, ExecutionResult, Response


class ResultAggregator:
    """Computes ExecutionMetrics once a run has settled."""

    def calculate(self, result: ExecutionResult) -> ExecutionMetrics:
        responses = list(result.responses.values())
        durations = [r.duration for r in responses]

        distribution: dict[int, int] = {}
        for response in responses:
            distribution[response.status] = distribution.get(response.status, 0) + 1

        total = result.total_requests
        if total > 0:
            success_rate = result.successful_requests / total * 100
            error_rate = result.failed_requests / total * 100
        else:
            success_rate = error_rate = 0.0

        return ExecutionMetrics(
            avg_response_time=sum(durations) / len(durations) if durations else 0.0,
            min_response_time=min(durations) if durations else 0.0,
            max_response_time=max(durations) if durations else 0.0,
            total_data_transferred=sum(self.body_size(r) for r in responses),
            requests_per_second=total / result.duration * 1000 if result.duration > 0 else 0.0,
            success_rate=success_rate,
            error_rate=error_rate,
            status_code_distribution=distribution,
        )

    @staticmethod
    def body_size(response: Response) -> int:
        """Size of a response body in bytes."""
        body: Any = response.body
        if body is None:
            return 0
        if isinstance(body, (bytes, bytearray)):
            return len(body)
        if isinstance(body, str):
            return len(body.encode("utf-8"))
        return len(json.dumps(body, default=str))
