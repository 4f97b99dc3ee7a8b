"""
Persisted delayed-task queue.

Work that must happen later (the next simulation tick, the next liveness
scan) is stored as a ScheduledTask row. The worker process calls
run_due_tasks() on a short poll; each handler may enqueue its own
successor, which is how the recurring chains are built. Finished rows stay
for inspection until prune_finished() removes them.
"""
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import ScheduledTask, TaskStatus, utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[async_sessionmaker, ScheduledTask, datetime], Awaitable[None]]

FINISHED_STATUSES = (TaskStatus.DONE.value, TaskStatus.FAILED.value, TaskStatus.CANCELLED.value)

_handlers: dict[str, Handler] = {}


def register(name: str) -> Callable[[Handler], Handler]:
    def decorator(handler: Handler) -> Handler:
        _handlers[name] = handler
        return handler

    return decorator


async def has_pending(session: AsyncSession, key: str) -> bool:
    count = await session.scalar(
        select(func.count(ScheduledTask.id)).where(
            ScheduledTask.key == key, ScheduledTask.status == TaskStatus.PENDING.value
        )
    )
    return bool(count)


async def schedule(
    session: AsyncSession,
    name: str,
    run_at: datetime,
    key: str,
    device_id: str | None = None,
    now: datetime | None = None,
) -> ScheduledTask | None:
    """Enqueue a task unless one with the same key is already pending.

    Only pending tasks count, so a running handler can always enqueue its
    own successor. Returns None when an existing pending task was kept.
    """
    if await has_pending(session, key):
        logger.debug("Task %s already pending, not scheduling another", key)
        return None
    task = ScheduledTask(
        name=name,
        key=key,
        device_id=device_id,
        run_at=run_at,
        status=TaskStatus.PENDING.value,
        created_at=now or utcnow(),
    )
    session.add(task)
    await session.flush()
    return task


async def cancel_pending(session: AsyncSession, key: str, now: datetime | None = None) -> int:
    result = await session.execute(
        update(ScheduledTask)
        .where(ScheduledTask.key == key, ScheduledTask.status == TaskStatus.PENDING.value)
        .values(status=TaskStatus.CANCELLED.value, finished_at=now or utcnow())
    )
    return result.rowcount or 0


async def prune_finished(session: AsyncSession, before: datetime) -> int:
    """Delete done, failed and cancelled tasks that finished before ``before``."""
    result = await session.execute(
        delete(ScheduledTask).where(
            ScheduledTask.status.in_(FINISHED_STATUSES), ScheduledTask.finished_at < before
        )
    )
    return result.rowcount or 0


async def _claim(session_factory: async_sessionmaker, task_id: int) -> bool:
    async with session_factory() as session:
        result = await session.execute(
            update(ScheduledTask)
            .where(ScheduledTask.id == task_id, ScheduledTask.status == TaskStatus.PENDING.value)
            .values(status=TaskStatus.RUNNING.value)
        )
        await session.commit()
        return result.rowcount == 1


async def _finish(
    session_factory: async_sessionmaker,
    task_id: int,
    status: TaskStatus,
    now: datetime,
    error: str | None = None,
) -> None:
    async with session_factory() as session:
        await session.execute(
            update(ScheduledTask)
            .where(ScheduledTask.id == task_id)
            .values(status=status.value, error=error, finished_at=now)
        )
        await session.commit()


async def run_due_tasks(
    session_factory: async_sessionmaker,
    now: datetime | None = None,
    limit: int = 100,
) -> int:
    """Run every pending task whose run_at has passed. Returns how many handlers ran."""
    now = now or utcnow()
    async with session_factory() as session:
        result = await session.execute(
            select(ScheduledTask)
            .where(ScheduledTask.status == TaskStatus.PENDING.value, ScheduledTask.run_at <= now)
            .order_by(ScheduledTask.run_at, ScheduledTask.id)
            .limit(limit)
        )
        due = result.scalars().all()

    executed = 0
    for task in due:
        # Another worker may have claimed it, or it was cancelled meanwhile.
        if not await _claim(session_factory, task.id):
            continue
        handler = _handlers.get(task.name)
        if handler is None:
            logger.error("No handler registered for task %s (%s)", task.id, task.name)
            await _finish(session_factory, task.id, TaskStatus.FAILED, now, f"Unknown task name {task.name}")
            continue
        executed += 1
        try:
            await handler(session_factory, task, now)
        except Exception as e:
            logger.exception("Task %s (%s) failed: %s", task.id, task.key, e)
            await _finish(session_factory, task.id, TaskStatus.FAILED, now, repr(e))
        else:
            await _finish(session_factory, task.id, TaskStatus.DONE, now)
    return executed
