import time
from typing import Callable, Optional, Tuple, Union

from loguru import logger

from .engine import QueueEngine
from .models import Job

HandlerResult = Union[bool, None, Tuple[bool, str]]


def _outcome(result: HandlerResult) -> Tuple[bool, str]:
    if isinstance(result, tuple):
        ok, message = result
        return bool(ok), message
    # None means the handler finished without complaint
    return result is not False, "Processor returned false"


def drain(
    queue: QueueEngine,
    handler: Callable[[Job], HandlerResult],
    limit: Optional[int] = None,
    race_retries: int = 3,
    poll_interval: float = 0.05,
) -> Tuple[int, int]:
    """
    Worker loop:
      - claims one job at a time in FIFO order until nothing is eligible
      - handler returning False (or (False, msg)) or raising marks the job failed
      - a lost claim race while work remains is retried a few times
      - Ctrl+C stops the loop; the claimed job stays in_progress and is
        recovered when the queue is next opened
    Returns (succeeded, failed).
    """
    ok_count = failed = misses = 0
    try:
        while limit is None or ok_count + failed < limit:
            job = queue.fetch_next()
            if job is None:
                if misses < race_retries and queue.progress().remaining > 0:
                    misses += 1
                    time.sleep(poll_interval)
                    continue
                break
            misses = 0
            try:
                ok, message = _outcome(handler(job))
            except Exception as e:
                ok, message = False, f"{type(e).__name__}: {e}"
            if ok:
                queue.mark_success(job.id)
                ok_count += 1
            else:
                queue.mark_failure(job.id, message)
                failed += 1
                logger.warning("Job {} failed: {}", job.id, message)
    except KeyboardInterrupt:
        logger.info("Interrupted; unfinished job will be re-queued on next open")
    return ok_count, failed
