"""
Utility modules for hypersearch.

"""

from .stop_condition import (
    JobCancelledStopper,
    MaxModelsStopper,
    SearchOverStopper,
    StopperProtocol,
    request_job_cancel,
)

__all__ = [
    "StopperProtocol",
    "SearchOverStopper",
    "MaxModelsStopper",
    "JobCancelledStopper",
    "request_job_cancel",
]
