"""Background job queues for queued (fire-and-forget) tool calls."""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, List

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus

from toolhub.infra.config import config
from toolhub.infra.metrics import queued_tool_jobs_total
from toolhub.infra.timeout import QUEUE_JOB_TIMEOUT, QUEUE_RESULT_TTL
from toolhub.models.tool_call import ToolCallRequest
from toolhub.workers.tool_job_processor import process_queued_tool_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueuedJobOutcome:
    """Final outcome of a background tool job, delivered to reconciliation listeners."""
    job_id: str
    call_id: str
    tool_name: str
    success: bool
    output: Any = None
    error: Optional[str] = None


OutcomeListener = Callable[[QueuedJobOutcome], None]


class JobQueue(ABC):
    """Hands queued tool calls to a background executor and reports their status."""

    @abstractmethod
    def submit(self, handler: Any, request: ToolCallRequest) -> str:
        """
        Enqueue a tool call and return immediately.

        Args:
            handler: Object exposing handle(request)
            request: The tool call to run in the background

        Returns:
            Job ID for tracking
        """

    @abstractmethod
    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Get status of a queued job: status, result (if finished), error (if failed)."""

    @abstractmethod
    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that has not started yet."""

    def add_listener(self, listener: OutcomeListener) -> None:
        """Register a callback receiving QueuedJobOutcome when a job finishes."""
        raise NotImplementedError(f"{type(self).__name__} does not push job outcomes")

    def shutdown(self, wait: bool = True) -> None:
        """Release executor resources."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkerPoolJobQueue(JobQueue):
    """
    In-process job queue backed by a thread pool.

    Outcomes are pushed to listeners from the worker thread that ran the job, so
    listeners must be thread-safe. Finished jobs stay queryable for result_ttl
    seconds and are evicted on a later submit.
    """

    def __init__(self, max_workers: int = None, result_ttl: float = QUEUE_RESULT_TTL):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.WORKER_POOL_SIZE,
            thread_name_prefix="toolhub-job",
        )
        self._lock = threading.Lock()
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._futures: Dict[str, Future] = {}
        self._ended: Dict[str, float] = {}
        self.result_ttl = result_ttl
        self._listeners: List[OutcomeListener] = []

    def add_listener(self, listener: OutcomeListener) -> None:
        with self._lock:
            self._listeners = self._listeners + [listener]

    def submit(self, handler: Any, request: ToolCallRequest) -> str:
        job_id = f"job_{uuid.uuid4().hex}"
        with self._lock:
            self._evict_expired()
            self._jobs[job_id] = {
                "job_id": job_id,
                "call_id": request.call_id,
                "tool_name": request.tool_name,
                "status": JobStatus.QUEUED.value,
                "created_at": _now_iso(),
            }
        future = self._executor.submit(self._run, job_id, handler, request.model_dump())
        with self._lock:
            self._futures[job_id] = future
        # Runs immediately if the job already finished
        future.add_done_callback(lambda _: self._forget(job_id))
        queued_tool_jobs_total.labels(tool_name=request.tool_name, status="queued").inc()
        return job_id

    def _run(self, job_id: str, handler: Any, request_data: Dict[str, Any]) -> None:
        self._update(job_id, status=JobStatus.STARTED.value, started_at=_now_iso())
        tool_name = request_data["tool_name"]
        try:
            result = process_queued_tool_call(handler, request_data)
        except Exception as e:
            logger.error(f"Queued tool call {tool_name} failed: {e}", exc_info=True)
            self._update(job_id, status=JobStatus.FAILED.value, error=str(e), ended_at=_now_iso())
            queued_tool_jobs_total.labels(tool_name=tool_name, status="failed").inc()
            outcome = QueuedJobOutcome(
                job_id=job_id,
                call_id=request_data["call_id"],
                tool_name=tool_name,
                success=False,
                error=str(e),
            )
        else:
            self._update(job_id, status=JobStatus.FINISHED.value, result=result["output"], ended_at=_now_iso())
            queued_tool_jobs_total.labels(tool_name=tool_name, status="finished").inc()
            outcome = QueuedJobOutcome(
                job_id=job_id,
                call_id=request_data["call_id"],
                tool_name=tool_name,
                success=True,
                output=result["output"],
            )
        self._notify(outcome)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
            if job_id in self._jobs:
                self._ended[job_id] = time.monotonic()

    def _evict_expired(self) -> None:
        """Drop finished jobs older than result_ttl. Caller holds the lock."""
        cutoff = time.monotonic() - self.result_ttl
        expired = [job_id for job_id, ended in self._ended.items() if ended <= cutoff]
        for job_id in expired:
            del self._ended[job_id]
            self._jobs.pop(job_id, None)
        if expired:
            logger.debug(f"Evicted {len(expired)} finished job(s) from the worker pool queue")

    def _update(self, job_id: str, **fields: Any) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.update(fields)

    def _notify(self, outcome: QueuedJobOutcome) -> None:
        with self._lock:
            listeners = self._listeners
        for listener in listeners:
            try:
                listener(outcome)
            except Exception as e:
                logger.warning(f"Queued job listener failed for {outcome.job_id}: {e}")

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return {"job_id": job_id, "status": "not_found", "error": "Unknown job"}
            return dict(job)

    def cancel_job(self, job_id: str) -> bool:
        with self._lock:
            future = self._futures.get(job_id)
        if future is None or not future.cancel():
            return False
        self._update(job_id, status=JobStatus.CANCELED.value, ended_at=_now_iso())
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class RQJobQueue(JobQueue):
    """
    Redis-backed job queue processed by rq workers (see scripts/start_worker.py).

    Outcomes are reconciled by polling get_job_status, or by rq success/failure
    callbacks passed at construction (they run inside the worker process).
    """

    def __init__(
        self,
        redis_conn: Optional[Redis] = None,
        queue_name: str = None,
        max_retries: int = 2,
        on_success: Optional[Callable] = None,
        on_failure: Optional[Callable] = None,
    ):
        self.redis_conn = redis_conn or Redis.from_url(config.REDIS_URL)
        self.queue = Queue(queue_name or config.QUEUE_NAME, connection=self.redis_conn)
        self.max_retries = max_retries
        self.on_success = on_success
        self.on_failure = on_failure

    def submit(self, handler: Any, request: ToolCallRequest) -> str:
        options: Dict[str, Any] = {
            "job_timeout": QUEUE_JOB_TIMEOUT,
            "result_ttl": QUEUE_RESULT_TTL,
            "meta": {"call_id": request.call_id, "tool_name": request.tool_name},
        }
        if self.max_retries:
            options["retry"] = Retry(max=self.max_retries)
        if self.on_success:
            options["on_success"] = self.on_success
        if self.on_failure:
            options["on_failure"] = self.on_failure

        job = self.queue.enqueue(process_queued_tool_call, handler, request.model_dump(), **options)
        queued_tool_jobs_total.labels(tool_name=request.tool_name, status="queued").inc()
        return job.id

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        try:
            job = Job.fetch(job_id, connection=self.redis_conn)

            status_info = {
                "job_id": job_id,
                "status": job.get_status(),
                "created_at": job.created_at.isoformat() if job.created_at else None,
                "call_id": job.meta.get("call_id"),
                "tool_name": job.meta.get("tool_name"),
            }

            if job.is_finished:
                result = job.return_value()
                status_info["result"] = result.get("output") if isinstance(result, dict) else result
                status_info["ended_at"] = job.ended_at.isoformat() if job.ended_at else None
            elif job.is_failed:
                status_info["error"] = str(job.exc_info) if job.exc_info else "Unknown error"
                status_info["ended_at"] = job.ended_at.isoformat() if job.ended_at else None
            elif job.is_started:
                status_info["started_at"] = job.started_at.isoformat() if job.started_at else None

            return status_info
        except NoSuchJobError as e:
            return {
                "job_id": job_id,
                "status": "not_found",
                "error": str(e),
            }

    def cancel_job(self, job_id: str) -> bool:
        try:
            job = Job.fetch(job_id, connection=self.redis_conn)
            if job.get_status() == JobStatus.QUEUED:
                job.cancel()
                return True
            return False
        except NoSuchJobError:
            return False


def create_job_queue(backend: str = None) -> JobQueue:
    """Build the job queue selected by configuration ('local' or 'rq')."""
    backend = backend or config.QUEUE_BACKEND
    if backend == "rq":
        return RQJobQueue()
    if backend == "local":
        return WorkerPoolJobQueue()
    raise ValueError(f"Unknown queue backend: {backend}")
