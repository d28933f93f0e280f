"""Background workers for batch generation."""

from genbatch.workers.executor import ExecutionSummary, WorkerPoolExecutor
from genbatch.workers.fanout_handler import HandlerOutcome, HandlerResult, process_item_job
from genbatch.workers.video_poller import VideoTaskPoller

__all__ = [
    "WorkerPoolExecutor",
    "ExecutionSummary",
    "process_item_job",
    "HandlerOutcome",
    "HandlerResult",
    "VideoTaskPoller",
]
