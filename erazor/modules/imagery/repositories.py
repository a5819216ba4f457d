"""
ImageTask Repository

Async persistence for task records. Takes a session factory rather than a
session so the same repository works for request-scoped API sessions and
for the short-lived sessions of a Celery job.
"""

from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from erazor.core.exceptions import InvalidTransitionError
from erazor.modules.imagery.models import ImageTask, ImageStatus


class ImageTaskRepository:
    """Repository for background-removal task records."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def create(self, task: ImageTask) -> ImageTask:
        async with self.session_factory() as session:
            session.add(task)
            await session.commit()
            await session.refresh(task)
            return task

    async def save(self, task: ImageTask, expected_status: ImageStatus) -> ImageTask:
        """Write `task` only if its row still holds `expected_status`.

        A concurrent writer that moved the row first makes this a no-op
        and raises InvalidTransitionError, so at most one of two racing
        requeues (or completions) takes effect.
        """
        values = task.model_dump(exclude={"id", "created_at"})
        async with self.session_factory() as session:
            result = await session.execute(
                update(ImageTask)
                .where(ImageTask.id == task.id, ImageTask.status == expected_status.value)
                .values(**values)
            )
            await session.commit()

        if result.rowcount == 0:
            raise InvalidTransitionError(expected_status.value, task.status, details={"task_id": task.id})
        return task

    async def get(self, task_id: str) -> Optional[ImageTask]:
        async with self.session_factory() as session:
            return await session.get(ImageTask, task_id)

    async def get_by_process_id(self, process_id: str) -> Optional[ImageTask]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImageTask).where(ImageTask.process_id == process_id)
            )
            return result.scalars().first()

    async def list_for_owner(
        self,
        owner_id: str,
        limit: int = 10,
        cursor: Optional[str] = None,
        search: Optional[str] = None,
        status: Optional[ImageStatus] = None,
    ) -> Tuple[List[ImageTask], Optional[str]]:
        """Newest-first page of an owner's tasks.

        Returns:
            (tasks, next_cursor); next_cursor is None on the last page
        """
        async with self.session_factory() as session:
            statement = select(ImageTask).where(ImageTask.owner_id == owner_id)

            if status is not None:
                statement = statement.where(ImageTask.status == status.value)
            if search:
                statement = statement.where(ImageTask.original_filename.contains(search))

            if cursor:
                anchor = await session.get(ImageTask, cursor)
                if anchor is not None:
                    statement = statement.where(
                        or_(
                            ImageTask.created_at < anchor.created_at,
                            and_(ImageTask.created_at == anchor.created_at, ImageTask.id < anchor.id),
                        )
                    )

            statement = statement.order_by(ImageTask.created_at.desc(), ImageTask.id.desc()).limit(limit + 1)
            result = await session.execute(statement)
            tasks = list(result.scalars().all())

        next_cursor = None
        if len(tasks) > limit:
            tasks = tasks[:limit]
            next_cursor = tasks[-1].id
        return tasks, next_cursor
