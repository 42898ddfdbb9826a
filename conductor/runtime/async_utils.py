"""
async_utils.py - Sync entry points for the async orchestrator.

The orchestrator is async end to end. Synchronous callers (scripts,
test harnesses, the excluded CLI layer) go through ``run_async_safely``
or the ``run_workflow_sync`` convenience wrapper.

Usage:
    from conductor.runtime.async_utils import run_workflow_sync

    result = run_workflow_sync(orchestrator, request)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import TYPE_CHECKING, Any, Coroutine, TypeVar

if TYPE_CHECKING:
    from .orchestrator import WorkflowOrchestrator
    from .types import WorkflowRequest, WorkflowResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_async_safely(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion from synchronous code.

    Without a running loop the coroutine runs under ``asyncio.run``. Called
    from inside a running loop, it is run on a fresh loop in a worker thread
    so the caller's loop is never re-entered.

    Args:
        coro: The coroutine to run.

    Returns:
        The result of the coroutine.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    logger.warning("run_async_safely called from async context. Consider using await directly.")
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def run_workflow_sync(
    orchestrator: "WorkflowOrchestrator", request: "WorkflowRequest"
) -> "WorkflowResult":
    """Run one workflow to a terminal state and return its result."""
    return run_async_safely(orchestrator.run(request))
