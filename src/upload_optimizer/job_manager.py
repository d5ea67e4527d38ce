"""
Job orchestration and the asynchronous delivery protocol for intercepted uploads.

Optimizing a video can take much longer than an HTTP client is willing to
wait for a response. Clients that follow redirects are therefore answered right
away with a temporary redirect to a wait endpoint while a background thread
runs the pipeline and forwards the result upstream:

    POST /api/assets   -> 307 /_upload-optimizer/wait?job=<id>
    GET  wait?job=<id> -> blocks up to 55s, then either the upstream response
                          or another 307 to itself (long polling)

Each in-flight job has a JobRecord, a single-use handoff slot between the one
producer (the background thread) and the one consumer (a wait request):

- Created: record registered under the registry lock
- Delivering: producer offers the upstream response for up to 10s
- Acknowledging: consumer took it and streams it; producer waits up to 10s for the ack
- Retired: record removed from the registry and closed, exactly once on every path

If no wait request shows up in time the response is closed and discarded.

Clients that cannot follow redirects skip the registry and block on the
pipeline for the full duration instead.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Condition, Event, Lock
from typing import Callable, Dict, Optional, Sequence
from uuid import uuid4

import httpx

from .errors import JobNotFoundError, JobRetiredError, PipelineError, UpstreamError
from .tasks import TaskProcessor, UploadDescriptor, processed_filename, should_replace
from .upstream import UpstreamClient, UpstreamForm
from .utils import PrefixedLogger, human_readable_size

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_TIMEOUT = 10.0
DEFAULT_ACK_TIMEOUT = 10.0
DEFAULT_WAIT_TIMEOUT = 55.0


class RedirectPolicy:
    """
    Decides whether a client can be trusted to follow a 307 redirect.

    There is no reliable way to detect redirect support, so the decision is a
    user agent prefix deny list. The default blocks the Immich mobile app,
    whose ``Dart/`` HTTP client does not re-POST after a 307.
    """

    def __init__(self, blocked_user_agent_prefixes: Sequence[str] = ("Dart/",)) -> None:
        self.blocked_user_agent_prefixes = tuple(blocked_user_agent_prefixes)

    def __call__(self, user_agent: Optional[str]) -> bool:
        return not (user_agent or "").startswith(self.blocked_user_agent_prefixes)


class JobRecord:
    """
    Handoff slot between one producer and one consumer.

    Attributes:
        id: Unique job identifier (hex UUID)
        created_at: Creation timestamp (UTC)
        log: Logger carrying the job id
    """

    def __init__(self, job_id: str, log: Optional[logging.LoggerAdapter] = None) -> None:
        self.id = job_id
        self.created_at = datetime.now(timezone.utc)
        self.log = log or PrefixedLogger(logger, f"job {job_id}: ")
        self._condition = Condition()
        self._response: Optional[httpx.Response] = None
        self._offered = False
        self._taken = False
        self._closed = False
        self._acknowledged = Event()

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def offer(self, response: httpx.Response, timeout: float) -> bool:
        """
        Hand a response to a consumer.

        Returns:
            True if a consumer took the response within ``timeout``. On False the
            offer has been withdrawn and the caller still owns the response.
        """
        with self._condition:
            if self._closed or self._offered:
                return False
            self._response = response
            self._offered = True
            self._condition.notify_all()
            self._condition.wait_for(lambda: self._taken or self._closed, timeout)
            if self._taken:
                return True
            self._response = None
            return False

    def take(self, timeout: float) -> Optional[httpx.Response]:
        """
        Receive the response, waiting up to ``timeout`` seconds.

        Returns:
            The response, now owned by the caller, or None if nothing arrived in time

        Raises:
            JobRetiredError: If the job was retired before a response could be taken
        """
        with self._condition:
            self._condition.wait_for(self._available_or_closed, timeout)
            if self._response is not None and not self._taken:
                self._taken = True
                response, self._response = self._response, None
                self._condition.notify_all()
                return response
            if self._closed:
                raise JobRetiredError(f"job {self.id} ended without a response")
            # timed out, or another wait request took the response first
            return None

    def _available_or_closed(self) -> bool:
        return (self._response is not None and not self._taken) or self._closed

    def acknowledge(self) -> None:
        """Signal that the response has been fully relayed to the client."""
        self._acknowledged.set()

    def wait_acknowledged(self, timeout: float) -> bool:
        return self._acknowledged.wait(timeout)

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()


class JobRegistry:
    """
    Lock-guarded mapping from job id to JobRecord.

    Thread Safety:
        Every insert, lookup and removal holds the registry lock
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = Lock()

    def create(self, log: Optional[PrefixedLogger] = None) -> JobRecord:
        job_id = uuid4().hex
        record = JobRecord(job_id, (log or PrefixedLogger(logger)).child(f"job {job_id}: "))
        with self._lock:
            self._jobs[job_id] = record
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def retire(self, job_id: str) -> bool:
        """
        Remove and close a record.

        Returns:
            True for the call that actually removed it, False for every later call
        """
        with self._lock:
            record = self._jobs.pop(job_id, None)
        if record is None:
            return False
        record.close()
        return True

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


@dataclass
class UploadResult:
    """Outcome of forwarding one upload upstream."""

    response: httpx.Response
    filename: str
    replaced: bool


class JobManager:
    """
    Central coordinator for intercepted uploads.

    This class orchestrates:
    - Running the task pipeline on an upload
    - Rebuilding the multipart request and forwarding it upstream
    - Background execution and delivery through the JobRegistry

    Attributes:
        registry: In-flight jobs awaiting delivery
        processor: Shared task pipeline
        upstream: Client for the upstream server
        follows_redirects: Predicate on the client's user agent
    """

    def __init__(
        self,
        processor: TaskProcessor,
        upstream: UpstreamClient,
        max_workers: int = 32,
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
        follows_redirects: Optional[Callable[[Optional[str]], bool]] = None,
    ) -> None:
        """
        Initialize the job manager.

        Args:
            processor: Pipeline shared with the directory watcher
            upstream: Client used to forward rebuilt uploads
            max_workers: Number of background job threads. Threads mostly wait on
                the concurrency gate or on delivery, so this can be well above
                the number of concurrent commands.
            delivery_timeout: Seconds a finished job waits for a wait request
            ack_timeout: Seconds a delivered job waits for the relay to finish
            wait_timeout: Seconds a wait request blocks before redirecting again
            follows_redirects: Predicate on the User-Agent header
        """
        self.processor = processor
        self.upstream = upstream
        self.registry = JobRegistry()
        self.delivery_timeout = delivery_timeout
        self.ack_timeout = ack_timeout
        self.wait_timeout = wait_timeout
        self.follows_redirects = follows_redirects or RedirectPolicy()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="upload-job")

    def process_upload(self, upload: UploadDescriptor, form: UpstreamForm, log: logging.LoggerAdapter) -> UploadResult:
        """
        Optimize an upload and forward it upstream.

        The original is forwarded when the pipeline result is not smaller. The
        returned response is streaming and must be closed by the caller.

        Raises:
            PipelineError: If no task handled the file; nothing is forwarded
            UpstreamError: If the upstream server could not be reached
        """
        log.info(f"uploaded {upload.filename} {human_readable_size(upload.size)}")

        with self.processor.process(upload, log) as processed:
            replaced = should_replace(upload.size, processed.size)
            new_filename = processed_filename(upload.filename, upload.extension, processed.extension)
            upload_filename = new_filename if replaced else upload.filename

            with (processed.open() if replaced else upload.open()) as content:
                response = self.upstream.forward_upload(form, upload_filename, content)

        action = "file replaced" if replaced else "file NOT replaced"
        log.info(
            f'{action}: "{upload.filename}" {human_readable_size(upload.size)} optimized to '
            f'"{new_filename}" {human_readable_size(processed.size)}'
        )
        return UploadResult(response=response, filename=upload_filename, replaced=replaced)

    def run_direct(self, upload: UploadDescriptor, form: UpstreamForm, log: logging.LoggerAdapter) -> httpx.Response:
        """
        Process an upload synchronously for a client that cannot follow redirects.

        Returns:
            The upstream response with its body already read
        """
        try:
            result = self.process_upload(upload, form, log)
        finally:
            upload.close()
        try:
            result.response.read()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"unable to read upstream response: {exc}") from exc
        finally:
            result.response.close()
        return result.response

    def start_job(self, upload: UploadDescriptor, form: UpstreamForm, log: Optional[PrefixedLogger] = None) -> JobRecord:
        """
        Register a job and process it in the background.

        The upload is owned by the job from here on and deleted when it ends.
        """
        record = self.registry.create(log)
        record.log.info("intercepting upload")
        self._executor.submit(self._run_job, record, upload, form)
        return record

    def _run_job(self, record: JobRecord, upload: UploadDescriptor, form: UpstreamForm) -> None:
        """Produce and deliver one job's response (runs in a background thread)."""
        log = record.log
        try:
            try:
                result = self.process_upload(upload, form, log)
            except (PipelineError, UpstreamError) as exc:
                log.error(f"failed to process file: {exc}")
                return
            finally:
                upload.close()

            response = result.response
            if not record.offer(response, self.delivery_timeout):
                response.close()
                log.warning("timeout while waiting for client to ask for a response on the wait page, redirect was not followed by the client")
                return

            if record.wait_acknowledged(self.ack_timeout):
                log.info("response sent to client")
            else:
                log.warning("timeout before response was fully sent to client")
        except Exception:
            log.exception("unexpected error while running job")
        finally:
            self.registry.retire(record.id)

    def wait(self, job_id: str) -> tuple[JobRecord, Optional[httpx.Response]]:
        """
        Wait for a job's response on behalf of a wait request.

        Returns:
            The record and the response, or None for the response if the safety
            timeout elapsed first. A returned response is owned by the caller,
            which must close it and then acknowledge the record.

        Raises:
            JobNotFoundError: If the job id is unknown or already retired
            JobRetiredError: If the job ended without producing a response
        """
        record = self.registry.get(job_id) if job_id else None
        if record is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return record, record.take(self.wait_timeout)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
