import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite

from .db import utc_now
from .errors import NonRetriableError
from .steps import StepContext, StepStore


logger = logging.getLogger("uvicorn.error")

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


class JobStore:
    """Persistent record of enqueued jobs so unfinished ones survive a restart."""

    def __init__(self, path: str):
        self.path = path

    async def create(self, event_name: str, function_id: str, payload: Dict[str, Any]) -> str:
        job_id = uuid.uuid4().hex
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO jobs(job_id, event_name, function_id, payload_json, status, attempts, last_error, "
                "created_at, updated_at) VALUES (?,?,?,?,?,0,NULL,?,?)",
                (job_id, event_name, function_id, json.dumps(payload, ensure_ascii=True), JOB_QUEUED, created_at, created_at),
            )
            await db.commit()
        return job_id

    async def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT job_id, event_name, function_id, payload_json, status, attempts, last_error, created_at, updated_at "
                "FROM jobs WHERE job_id=?",
                (job_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        return {
            "job_id": row["job_id"],
            "event_name": row["event_name"],
            "function_id": row["function_id"],
            "payload": json.loads(row["payload_json"] or "{}"),
            "status": row["status"],
            "attempts": int(row["attempts"] or 0),
            "last_error": row["last_error"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def mark_attempt(self, job_id: str) -> int:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "UPDATE jobs SET status=?, attempts=attempts+1, updated_at=? WHERE job_id=?",
                (JOB_RUNNING, utc_now(), job_id),
            )
            await db.commit()
            cursor = await db.execute("SELECT attempts FROM jobs WHERE job_id=?", (job_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return int(row[0]) if row else 0

    async def set_status(self, job_id: str, status: str, error: Optional[str] = None) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "UPDATE jobs SET status=?, last_error=COALESCE(?, last_error), updated_at=? WHERE job_id=?",
                (status, error, utc_now(), job_id),
            )
            await db.commit()

    async def list_unfinished(self) -> List[str]:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "SELECT job_id FROM jobs WHERE status IN (?, ?) ORDER BY created_at ASC",
                (JOB_QUEUED, JOB_RUNNING),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]


@dataclass
class JobContext:
    job_id: str
    event: str
    data: Dict[str, Any]
    step: StepContext
    attempt: int = 1


JobHandler = Callable[[JobContext], Awaitable[Any]]
FailureHandler = Callable[[JobContext, BaseException], Awaitable[Any]]


@dataclass
class JobFunction:
    id: str
    event: str
    handler: JobHandler
    on_failure: Optional[FailureHandler] = None


class JobQueue:
    """Run registered functions for sent events as retried, checkpointed asyncio tasks."""

    def __init__(
        self,
        job_store: JobStore,
        step_store: StepStore,
        max_attempts: int = 3,
        retry_backoff_s: float = 1.0,
    ):
        self.job_store = job_store
        self.step_store = step_store
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_s = retry_backoff_s
        self.functions: Dict[str, JobFunction] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

    def register(self, fn: JobFunction) -> None:
        self.functions[fn.id] = fn

    def functions_for(self, event: str) -> List[JobFunction]:
        return [fn for fn in self.functions.values() if fn.event == event]

    async def send(self, event: str, data: Dict[str, Any]) -> List[str]:
        job_ids = []
        for fn in self.functions_for(event):
            job_id = await self.job_store.create(event, fn.id, data)
            logger.info("Job %s queued for %s (%s)", job_id, fn.id, event)
            self._schedule(job_id)
            job_ids.append(job_id)
        if not job_ids:
            logger.warning("No job function registered for event %s", event)
        return job_ids

    async def start(self) -> None:
        for job_id in await self.job_store.list_unfinished():
            if job_id not in self.tasks:
                logger.info("Job %s resumed after restart", job_id)
                self._schedule(job_id)

    def _schedule(self, job_id: str) -> None:
        task = asyncio.create_task(self._run(job_id))
        self.tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self.tasks.pop(jid, None))

    async def _run(self, job_id: str) -> None:
        job = await self.job_store.get(job_id)
        if not job or job["status"] in (JOB_COMPLETED, JOB_FAILED):
            return
        fn = self.functions.get(job["function_id"])
        if fn is None:
            await self.job_store.set_status(job_id, JOB_FAILED, f"unknown function {job['function_id']}")
            return
        while True:
            attempt = await self.job_store.mark_attempt(job_id)
            ctx = JobContext(
                job_id=job_id,
                event=job["event_name"],
                data=job["payload"],
                step=StepContext(job_id, self.step_store),
                attempt=attempt,
            )
            try:
                await fn.handler(ctx)
            except Exception as exc:
                error_text = f"{type(exc).__name__}: {exc}"
                retriable = not isinstance(exc, NonRetriableError)
                if retriable and attempt < self.max_attempts:
                    logger.warning(
                        "Job %s attempt %s/%s failed, retrying: %s", job_id, attempt, self.max_attempts, exc
                    )
                    await self.job_store.set_status(job_id, JOB_QUEUED, error_text)
                    await asyncio.sleep(self.retry_backoff_s * attempt)
                    continue
                logger.error("Job %s failed after %s attempt(s): %s", job_id, attempt, exc)
                await self._fail(fn, ctx, exc, error_text)
                return
            await self.job_store.set_status(job_id, JOB_COMPLETED)
            logger.info("Job %s completed after %s attempt(s)", job_id, attempt)
            return

    async def _fail(self, fn: JobFunction, ctx: JobContext, exc: BaseException, error_text: str) -> None:
        if fn.on_failure is not None:
            # A fresh step context so the failure write is checkpointed once.
            failure_ctx = JobContext(
                job_id=ctx.job_id,
                event=ctx.event,
                data=ctx.data,
                step=StepContext(ctx.job_id, self.step_store),
                attempt=ctx.attempt,
            )
            try:
                await failure_ctx.step.run("on-failure", fn.on_failure, failure_ctx, exc)
            except Exception as failure_exc:
                logger.error("Job %s failure handler raised: %s", ctx.job_id, failure_exc)
        await self.job_store.set_status(ctx.job_id, JOB_FAILED, error_text)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every in-flight job has finished."""
        while self.tasks:
            pending = list(self.tasks.values())
            await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=timeout)

    async def close(self) -> None:
        for task in list(self.tasks.values()):
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()
