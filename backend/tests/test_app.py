"""Application lifespan wiring."""
from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow_gateway.main import create_app


class DisposableBind:
    """Stands in for an engine; only dispose() is exercised."""

    def __init__(self) -> None:
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True


@pytest.mark.asyncio
async def test_shutdown_disposes_the_injected_engine(dispatcher, gateway):
    bind = DisposableBind()
    app = create_app(
        session_factory=async_sessionmaker(bind=bind, class_=AsyncSession),  # type: ignore[arg-type]
        dispatcher=dispatcher,
        gateway=gateway,
    )

    async with app.router.lifespan_context(app):
        assert not bind.disposed

    assert bind.disposed


@pytest.mark.asyncio
async def test_lifespan_starts_and_stops_the_dispatcher(app, dispatcher):
    async with app.router.lifespan_context(app):
        running = list(dispatcher._tasks)
        assert running

    assert all(task.done() for task in running)
    assert dispatcher._tasks == []
