"""Job messages, execution substrate backends, and the job router."""

from billing_engine.jobs.messages import (
    BulkChargeJob,
    ChargeOutcomeJob,
    EvaluateSchedulesJob,
    Job,
    RebillJob,
    dump_job,
    parse_job,
)
from billing_engine.jobs.queue import (
    RETRYABLE_EXCEPTIONS,
    AsyncioJobQueue,
    InlineJobQueue,
    JobQueue,
    NullJobQueue,
)

__all__ = [
    "RETRYABLE_EXCEPTIONS",
    "AsyncioJobQueue",
    "BulkChargeJob",
    "ChargeOutcomeJob",
    "EvaluateSchedulesJob",
    "InlineJobQueue",
    "Job",
    "JobQueue",
    "NullJobQueue",
    "RebillJob",
    "dump_job",
    "parse_job",
]
