"""
Proof pipeline: supervises the long-lived external prover process.

The worker speaks newline-delimited JSON over stdin/stdout. It announces
itself with ``{"ready": true}``, then answers each request
``{"jobId", "kind", "inputs"}`` with exactly one
``{"jobId", "ok", "result" | "error"}`` line, in any order.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from zkasp.exceptions import (
    ProofFailedError,
    ProverCrashedError,
    ProverError,
    ProverTimeoutError,
    ProverUnavailableError,
)
from zkasp.storage.database import DatabaseManager, ProofJobState

logger = logging.getLogger(__name__)

# Largest single response line accepted from the worker (proof calldata is big)
STREAM_LIMIT = 16 * 1024 * 1024

_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (ProverTimeoutError, ProverCrashedError, ProofFailedError, ProverUnavailableError)
}


@dataclass
class ProofResult:
    """Payload the worker returned for a completed job."""

    job_id: str
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def calldata(self) -> List[str]:
        return list(self.data.get("calldata", []))

    @property
    def public_signals(self) -> List[str]:
        return list(self.data.get("publicSignals", []))


class ProofPipeline:
    """
    FIFO queue of proof jobs in front of a single worker process.

    At most ``max_in_flight`` jobs are dispatched at once. A dispatched job
    that gets no answer within ``timeout`` seconds fails with
    ``ProverTimeoutError`` and the worker is replaced; anything else in
    flight on a dead worker fails with ``ProverCrashedError``. Failed jobs are
    never retried automatically.
    """

    def __init__(
        self,
        db: DatabaseManager,
        argv: Sequence[str],
        timeout: float = 120.0,
        max_in_flight: int = 1,
        startup_timeout: float = 30.0,
        max_restarts: int = 5,
        restart_backoff: float = 0.2,
    ):
        if not argv:
            raise ValueError("Prover command is empty")
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")

        self.db = db
        self.argv = list(argv)
        self.timeout = timeout
        self.max_in_flight = max_in_flight
        self.startup_timeout = startup_timeout
        self.max_restarts = max_restarts
        self.restart_backoff = restart_backoff

        self._queue: Deque[str] = deque()
        self._jobs: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._dispatched: Dict[str, float] = {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._running = False
        self._failures = 0
        self.restarts = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_alive(self) -> bool:
        """Whether a worker process is currently up."""
        return self._process is not None and self._process.returncode is None

    # Lifecycle

    async def start(self) -> None:
        """
        Spawn the worker and start dispatching.

        Jobs a previous run left queued or dispatched are failed first; their
        callers are gone.

        Raises:
            ProverUnavailableError: If the worker does not come up
        """
        if self._running:
            return
        with self.db.session_scope() as session:
            stale = self.db.fail_unfinished_jobs(
                session, ProverCrashedError.code, "Prover pipeline restarted"
            )
        if stale:
            logger.warning("Failed %d proof jobs left over from a previous run", stale)

        self._wakeup = asyncio.Event()
        process = await self._spawn()
        self._running = True
        self._supervisor = asyncio.ensure_future(self._supervise(process))

    async def stop(self) -> None:
        """Stop the worker; pending jobs fail with ``ProverCrashedError``."""
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        self._fail_all(ProverCrashedError, "Prover pipeline stopped")
        process = self._process
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if self._supervisor is not None:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None
        self._process = None
        logger.info("Prover pipeline stopped")

    # Jobs

    def submit(self, kind: str, inputs: Dict[str, Any], retry_count: int = 0) -> str:
        """
        Persist a job as queued and enqueue it.

        Returns:
            str: Job id

        Raises:
            ProverUnavailableError: If the pipeline is not running
        """
        if not self._running:
            raise ProverUnavailableError("Prover pipeline is not running")

        job_id = uuid.uuid4().hex
        with self.db.session_scope() as session:
            job = self.db.create_proof_job(session, job_id, kind, inputs)
            if retry_count:
                job.retry_count = retry_count
                session.commit()

        self._jobs[job_id] = (kind, inputs)
        self._futures[job_id] = asyncio.get_running_loop().create_future()
        self._queue.append(job_id)
        self._wakeup.set()
        logger.debug("Proof job %s (%s) queued", job_id, kind)
        return job_id

    def resubmit(self, job_id: str) -> str:
        """Queue a fresh job with the inputs of a failed one."""
        with self.db.session_scope() as session:
            job = self.db.get_proof_job(session, job_id)
            if job is None:
                raise ProverError(f"Unknown proof job {job_id}", job_id)
            if job.state != ProofJobState.FAILED:
                raise ProverError(f"Proof job {job_id} is {job.state.value}, not failed", job_id)
            kind, inputs, retry_count = job.kind, json.loads(job.inputs), job.retry_count
        return self.submit(kind, inputs, retry_count=retry_count + 1)

    async def await_result(self, job_id: str) -> ProofResult:
        """
        Wait for a job to finish.

        Cancelling the caller does not cancel the job.

        Raises:
            ProverTimeoutError, ProverCrashedError, ProofFailedError
        """
        future = self._futures.get(job_id)
        if future is not None:
            return await asyncio.shield(future)
        return self._result_from_record(job_id)

    async def prove(self, kind: str, inputs: Dict[str, Any]) -> ProofResult:
        """Submit a job and wait for its result."""
        return await self.await_result(self.submit(kind, inputs))

    async def ping(self, timeout: float = 5.0) -> bool:
        """Round-trip a ``ping`` job through the worker."""
        if not self._running:
            return False
        try:
            result = await asyncio.wait_for(self.prove("ping", {}), timeout=timeout)
        except (ProverError, asyncio.TimeoutError):
            return False
        return bool(result.data.get("pong", True))

    def _result_from_record(self, job_id: str) -> ProofResult:
        with self.db.session_scope() as session:
            job = self.db.get_proof_job(session, job_id)
            if job is None:
                raise ProverError(f"Unknown proof job {job_id}", job_id)
            if job.state == ProofJobState.COMPLETED:
                return ProofResult(job_id=job_id, kind=job.kind, data=json.loads(job.result or "{}"))
            if job.state == ProofJobState.FAILED:
                error_cls = _ERRORS_BY_CODE.get(job.error_code, ProverError)
                raise error_cls(job.error or "Proof job failed", job_id)
            raise ProverError(f"Proof job {job_id} is {job.state.value} in another process", job_id)

    # Worker process

    async def _spawn(self) -> asyncio.subprocess.Process:
        """Start a worker and wait for its ready line."""
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProverUnavailableError(f"Cannot start prover {self.argv[0]}: {e}") from e

        try:
            await asyncio.wait_for(self._handshake(process), timeout=self.startup_timeout)
        except (asyncio.TimeoutError, ProverUnavailableError) as e:
            if process.returncode is None:
                process.kill()
            await process.wait()
            if isinstance(e, ProverUnavailableError):
                raise
            raise ProverUnavailableError(
                f"Prover did not become ready within {self.startup_timeout}s"
            ) from e

        self._process = process
        logger.info("Prover worker ready (pid %s)", process.pid)
        return process

    @staticmethod
    async def _handshake(process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stdout.readline()
            if not line:
                raise ProverUnavailableError("Prover exited before it was ready")
            try:
                message = json.loads(line)
            except ValueError:
                logger.debug("Ignoring prover output before ready: %r", line[:200])
                continue
            if isinstance(message, dict) and message.get("ready") is True:
                return

    async def _supervise(self, process: asyncio.subprocess.Process) -> None:
        """Serve the current worker; respawn it whenever it goes away."""
        while self._running:
            await self._serve(process)
            self._fail_dispatched(ProverCrashedError, "Prover process exited with the job in flight")
            if not self._running:
                return

            process = None
            while self._running and process is None:
                await asyncio.sleep(min(self.restart_backoff * 2 ** self._failures, 5.0))
                try:
                    process = await self._spawn()
                except ProverUnavailableError as e:
                    self._failures += 1
                    logger.warning("Prover restart failed: %s", e)
                    if self._failures > self.max_restarts:
                        logger.error("Prover failed to restart %d times in a row, giving up",
                                     self._failures)
                        self._running = False
                        self._fail_all(ProverUnavailableError, "Prover is unavailable")
                        return
                    continue
                # only failed spawns count against max_restarts
                self._failures = 0
                self.restarts += 1

    async def _serve(self, process: asyncio.subprocess.Process) -> None:
        """Dispatch jobs and enforce deadlines until the worker exits."""
        loop = asyncio.get_running_loop()
        reader = asyncio.ensure_future(self._read_responses(process))
        try:
            while self._running and not reader.done():
                self._wakeup.clear()
                await self._dispatch_ready(process)

                delay = None
                if self._dispatched:
                    delay = max(0.0, min(self._dispatched.values()) - loop.time())
                waiter = asyncio.ensure_future(self._wakeup.wait())
                await asyncio.wait({reader, waiter}, timeout=delay,
                                   return_when=asyncio.FIRST_COMPLETED)
                if not waiter.done():
                    waiter.cancel()

                now = loop.time()
                expired = [job_id for job_id, deadline in self._dispatched.items() if deadline <= now]
                if expired:
                    for job_id in expired:
                        logger.error("Proof job %s timed out after %ss", job_id, self.timeout)
                        self._finish(job_id, error=ProverTimeoutError(
                            f"No prover response within {self.timeout}s", job_id))
                    logger.warning("Killing hung prover (pid %s)", process.pid)
                    if process.returncode is None:
                        process.kill()
                    await reader
        finally:
            if not reader.done():
                reader.cancel()
        if process.returncode is None and not self._running:
            return
        await process.wait()
        logger.warning("Prover worker exited with code %s", process.returncode)

    async def _dispatch_ready(self, process: asyncio.subprocess.Process) -> None:
        loop = asyncio.get_running_loop()
        while self._queue and len(self._dispatched) < self.max_in_flight:
            job_id = self._queue.popleft()
            if job_id not in self._jobs:
                continue
            kind, inputs = self._jobs[job_id]
            with self.db.session_scope() as session:
                moved = self.db.transition_proof_job(
                    session, job_id, [ProofJobState.QUEUED], ProofJobState.DISPATCHED
                )
            if not moved:
                continue

            self._dispatched[job_id] = loop.time() + self.timeout
            request = json.dumps({"jobId": job_id, "kind": kind, "inputs": inputs}) + "\n"
            try:
                process.stdin.write(request.encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                # The reader sees EOF next and fails the job as crashed
                logger.warning("Writing job %s to the prover failed: %s", job_id, e)
                return
            logger.debug("Proof job %s dispatched", job_id)

    async def _read_responses(self, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError as e:
                logger.warning("Dropping oversized prover output: %s", e)
                continue
            if not line:
                return
            self._handle_line(line)

    def _handle_line(self, line: bytes) -> None:
        try:
            message = json.loads(line)
        except ValueError:
            logger.warning("Dropping unparseable prover output: %r", line[:200])
            return
        if not isinstance(message, dict) or "jobId" not in message:
            logger.warning("Dropping prover message without jobId: %r", line[:200])
            return

        job_id = message["jobId"]
        if job_id not in self._dispatched:
            logger.warning("Dropping prover response for unknown job %s", job_id)
            return

        if message.get("ok") is True:
            result = message.get("result")
            if not isinstance(result, dict):
                result = {"value": result}
            self._finish(job_id, result=result)
        else:
            error = str(message.get("error") or "Prover reported failure")
            logger.warning("Proof job %s failed: %s", job_id, error)
            self._finish(job_id, error=ProofFailedError(error, job_id))

    # Job completion

    def _finish(self, job_id: str, result: Optional[Dict[str, Any]] = None,
                error: Optional[ProverError] = None) -> None:
        """Record a terminal state and wake the caller. Only the first outcome counts."""
        with self.db.session_scope() as session:
            if error is None:
                recorded = self.db.transition_proof_job(
                    session, job_id, [ProofJobState.DISPATCHED], ProofJobState.COMPLETED,
                    result=result,
                )
            else:
                recorded = self.db.transition_proof_job(
                    session, job_id, [ProofJobState.QUEUED, ProofJobState.DISPATCHED],
                    ProofJobState.FAILED, error_code=error.code, error=str(error),
                )

        self._dispatched.pop(job_id, None)
        kind, _ = self._jobs.pop(job_id, (None, None))
        future = self._futures.pop(job_id, None)
        if self._wakeup is not None:
            self._wakeup.set()
        if not recorded:
            logger.warning("Proof job %s was already terminal in the store", job_id)
        if future is None or future.done():
            return
        if error is None:
            future.set_result(ProofResult(job_id=job_id, kind=kind, data=result))
        else:
            future.set_exception(error)
            future.exception()  # mark retrieved

    def _fail_dispatched(self, error_cls, message: str) -> None:
        for job_id in list(self._dispatched):
            self._finish(job_id, error=error_cls(message, job_id))

    def _fail_all(self, error_cls, message: str) -> None:
        self._fail_dispatched(error_cls, message)
        while self._queue:
            job_id = self._queue.popleft()
            self._finish(job_id, error=error_cls(message, job_id))
