from .remote_scheduler import (
    RemoteScheduler,
    RemoteSchedulerClient,
    RemoteSchedulerError,
    ReviewRequest,
    build_remote_scheduler,
)

__all__ = [
    "RemoteScheduler",
    "RemoteSchedulerClient",
    "RemoteSchedulerError",
    "ReviewRequest",
    "build_remote_scheduler",
]
