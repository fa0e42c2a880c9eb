"""
Stop callbacks consulted by each hypersearch worker before it asks for more work.
"""

from typing import Protocol, runtime_checkable

CANCEL_FIELD = "cancel"


@runtime_checkable
class StopperProtocol(Protocol):
    """
    Protocol for stop condition objects.

    A stopper is a callable object that returns True when the worker should stop
    asking for new work.
    """

    def __call__(self, coordinator) -> bool:
        """
        Check if the worker should stop.

        Args:
            coordinator: The SwarmCoordinator driving this worker

        Returns:
            True if the worker should stop, False otherwise.
        """
        ...


class SearchOverStopper(StopperProtocol):
    # stop callback that stops once the shared state says the search is over

    def __call__(self, coordinator) -> bool:
        return coordinator.store.is_search_over()


class MaxModelsStopper(StopperProtocol):
    # stop callback that stops after a maximum number of models

    def __init__(self, max_models: int):
        self.max_models = max_models

    def __call__(self, coordinator) -> bool:
        # return true if max models reached
        return coordinator.results.num_models() >= self.max_models


class JobCancelledStopper(StopperProtocol):
    # stop callback that stops once any client has flagged the job as cancelled

    def __call__(self, coordinator) -> bool:
        return coordinator.store.record_store.get_field(coordinator.job_id, CANCEL_FIELD) is not None


def request_job_cancel(record_store, job_id: str) -> bool:
    """
    Flag ``job_id`` as cancelled so every worker's :class:`JobCancelledStopper` fires.

    Returns:
        True if this call set the flag, False if the job was already cancelled.
    """
    return record_store.set_field_if_equal(job_id, CANCEL_FIELD, "1", None)
