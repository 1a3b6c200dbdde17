"""Repositories for Coconut job and output database operations."""

from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coconut_jobs.modules.transcoding.models import Job, Output


class JobRepository:
    """Repository for Job operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, job: Job) -> Job:
        """Persist a new job and assign its id."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def save(self, job: Job) -> Job:
        """Flush pending changes of a job."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: int) -> Optional[Job]:
        result = await self.session.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def get_by_coconut_id(self, coconut_id: str) -> Optional[Job]:
        result = await self.session.execute(
            select(Job).where(Job.coconut_id == coconut_id)
        )
        return result.scalar_one_or_none()

    async def get_for_input(self, input_url_hash: str) -> list[Job]:
        """Jobs created for an input URL, newest first."""
        result = await self.session.execute(
            select(Job)
            .where(Job.input_url_hash == input_url_hash)
            .order_by(Job.created_at.desc())
        )
        return list(result.scalars().all())

    async def delete(self, job: Job) -> None:
        await self.session.delete(job)
        await self.session.flush()


class OutputRepository:
    """Repository for Output operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(self, output: Output) -> Output:
        self.session.add(output)
        await self.session.flush()
        return output

    async def claim(self, output: Output) -> tuple[Output, bool]:
        """Insert a new output unless one exists for its (source, format).

        The insert runs in a savepoint so that losing a race against a
        concurrent request only discards this output.

        Returns:
            The stored output, and whether it was created by this call
        """
        try:
            async with self.session.begin_nested():
                self.session.add(output)
                await self.session.flush()
            return output, True
        except IntegrityError:
            existing = await self.get_by_source_format(output.source, output.format)
            if existing is None:
                raise
            return existing, False

    async def get_by_id(self, output_id: int) -> Optional[Output]:
        result = await self.session.execute(select(Output).where(Output.id == output_id))
        return result.scalar_one_or_none()

    async def get_by_source_format(self, source: str, format: str) -> Optional[Output]:
        result = await self.session.execute(
            select(Output).where(Output.source == source, Output.format == format)
        )
        return result.scalar_one_or_none()

    async def get_by_job(self, job_id: int) -> list[Output]:
        result = await self.session.execute(
            select(Output).where(Output.job_id == job_id).order_by(Output.id)
        )
        return list(result.scalars().all())

    async def find(self, **criteria: Any) -> list[Output]:
        """Outputs whose columns match every criterion.

        List values match any of their items.
        """
        query = select(Output)
        for name, value in criteria.items():
            column = getattr(Output, name)
            if isinstance(value, (list, tuple, set)):
                query = query.where(column.in_(list(value)))
            else:
                query = query.where(column == value)
        result = await self.session.execute(query.order_by(Output.id))
        return list(result.scalars().all())

    async def delete(self, output: Output) -> None:
        await self.session.delete(output)
        await self.session.flush()

    async def delete_many(self, output_ids: list[int]) -> int:
        if not output_ids:
            return 0
        result = await self.session.execute(
            delete(Output).where(Output.id.in_(output_ids))
        )
        await self.session.flush()
        return result.rowcount or 0
