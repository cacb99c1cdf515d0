"""
Tests for the payment retry worker.
"""
from typing import Any

import pytest

from orderflow.container import Container
from orderflow.workers.payment_retry_worker import run_payment_jobs


class TestRunPaymentJobs:
    """Test suite for run_payment_jobs."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_summary(self, container: Container) -> None:
        summary = await run_payment_jobs(container)

        assert summary["retry"]["processed"] == 0
        assert summary["sync"]["processed"] == 0
        assert summary["cleanup"]["cleaned"] == 0
        assert summary["idempotency_purged"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_others(self, container: Container, mocker: Any) -> None:
        mocker.patch.object(
            container.retry_service, "retry_failed_payments", side_effect=RuntimeError("boom")
        )

        summary = await run_payment_jobs(container, cleanup=False)

        assert summary["retry"] == {"error": "boom"}
        assert summary["sync"]["processed"] == 0
        assert "cleanup" not in summary
