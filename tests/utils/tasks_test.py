from __future__ import annotations

import asyncio
import contextlib
import logging

import pytest

from peershare.utils.tasks import cancel_and_wait
from peershare.utils.tasks import SafeTaskExitError
from peershare.utils.tasks import spawn_guarded_background_task


def test_background_task_exits_on_error() -> None:
    async def okay_task() -> None:
        return

    async def safe_task() -> None:
        raise SafeTaskExitError()

    async def bad_task() -> None:
        raise RuntimeError()

    async def run(task) -> None:
        await spawn_guarded_background_task(task)

    with contextlib.redirect_stdout(
        None,
    ), contextlib.redirect_stderr(None):
        asyncio.run(run(okay_task))
        with pytest.raises(SafeTaskExitError):
            asyncio.run(run(safe_task))
        with pytest.raises(SystemExit):
            asyncio.run(run(bad_task))


def test_background_task_error_is_logged(caplog) -> None:
    caplog.set_level(logging.ERROR)

    async def bad_task() -> None:
        raise RuntimeError('Oh no!')

    async def run(task) -> None:
        await spawn_guarded_background_task(task, name='bad-task')

    with contextlib.redirect_stdout(
        None,
    ), contextlib.redirect_stderr(None):
        with pytest.raises(SystemExit):
            asyncio.run(run(bad_task))

    assert any(['Traceback' in record.message for record in caplog.records])
    assert any(['Oh no!' in record.message for record in caplog.records])
    assert any(['bad-task' in record.message for record in caplog.records])


@pytest.mark.asyncio()
async def test_background_task_passes_arguments() -> None:
    results: list[int] = []

    async def task(a: int, *, b: int) -> None:
        results.append(a + b)

    await spawn_guarded_background_task(task, 1, b=2)
    assert results == [3]


@pytest.mark.asyncio()
async def test_cancel_and_wait() -> None:
    async def forever() -> None:
        await asyncio.sleep(1000)

    task = spawn_guarded_background_task(forever)
    await asyncio.sleep(0)
    await cancel_and_wait(task)
    assert task.cancelled()

    # No-ops
    await cancel_and_wait(task)
    await cancel_and_wait(None)
