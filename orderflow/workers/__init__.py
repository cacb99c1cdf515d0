"""Background workers."""
from .payment_retry_worker import run_payment_jobs, start_payment_retry_worker

__all__ = ["run_payment_jobs", "start_payment_retry_worker"]
