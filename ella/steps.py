import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import aiosqlite

from .db import utc_now


logger = logging.getLogger("uvicorn.error")

STEP_COMPLETED = "completed"
STEP_FAILED = "failed"


class StepStore:
    """Persist the step log of each job, keyed by (job_id, step_name)."""

    def __init__(self, path: str):
        self.path = path

    async def get(self, job_id: str, step_name: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT status, output_json, error_text, attempts FROM job_steps WHERE job_id=? AND step_name=?",
                (job_id, step_name),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        return {
            "status": row["status"],
            "output": json.loads(row["output_json"]) if row["output_json"] else None,
            "error": row["error_text"],
            "attempts": int(row["attempts"] or 0),
        }

    async def complete(self, job_id: str, step_name: str, output: Any) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO job_steps(job_id, step_name, status, output_json, error_text, attempts, updated_at) "
                "VALUES (?,?,?,?,NULL,1,?) "
                "ON CONFLICT(job_id, step_name) DO UPDATE SET status=excluded.status, "
                "output_json=excluded.output_json, error_text=NULL, attempts=job_steps.attempts+1, "
                "updated_at=excluded.updated_at",
                (job_id, step_name, STEP_COMPLETED, json.dumps(output, ensure_ascii=True), utc_now()),
            )
            await db.commit()

    async def fail(self, job_id: str, step_name: str, error: str) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO job_steps(job_id, step_name, status, output_json, error_text, attempts, updated_at) "
                "VALUES (?,?,?,NULL,?,1,?) "
                "ON CONFLICT(job_id, step_name) DO UPDATE SET status=excluded.status, "
                "error_text=excluded.error_text, attempts=job_steps.attempts+1, updated_at=excluded.updated_at",
                (job_id, step_name, STEP_FAILED, error, utc_now()),
            )
            await db.commit()

    async def list_steps(self, job_id: str) -> Dict[str, Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT step_name, status, error_text, attempts FROM job_steps WHERE job_id=? ORDER BY updated_at ASC",
                (job_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return {
            row["step_name"]: {
                "status": row["status"],
                "error": row["error_text"],
                "attempts": int(row["attempts"] or 0),
            }
            for row in rows
        }


StepFn = Callable[..., Union[Any, Awaitable[Any]]]


class StepContext:
    """Checkpointed step execution for one job attempt.

    A step that already completed in an earlier attempt returns its recorded
    output without being called again. Outputs must be JSON-serialisable.
    """

    def __init__(self, job_id: str, store: StepStore):
        self.job_id = job_id
        self.store = store
        self._seen: Dict[str, int] = {}

    def _key(self, name: str) -> str:
        count = self._seen.get(name, 0) + 1
        self._seen[name] = count
        return name if count == 1 else f"{name}:{count}"

    async def run(self, name: str, fn: StepFn, *args: Any, **kwargs: Any) -> Any:
        key = self._key(name)
        record = await self.store.get(self.job_id, key)
        if record and record["status"] == STEP_COMPLETED:
            logger.debug("Job %s step %s replayed from log", self.job_id, key)
            return record["output"]
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            await self.store.fail(self.job_id, key, f"{type(exc).__name__}: {exc}")
            logger.warning("Job %s step %s failed: %s", self.job_id, key, exc)
            raise
        await self.store.complete(self.job_id, key, result)
        return result
