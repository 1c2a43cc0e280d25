"""
Action invocation: how one stage starts the next without waiting for it.

Workers never block on each other. An invoker hands a parameter bag to a
named action and returns an activation id immediately; the invoked action
records its progress in the state store.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Set

import aiohttp

logger = logging.getLogger(__name__)


class InvocationError(Exception):
    """Raised when an action cannot be dispatched"""
    pass


def new_activation_id(action: str) -> str:
    return f"{action}-{uuid.uuid4().hex[:12]}"


class ActionInvoker:
    """Interface: invoke(action, params) -> activation id."""

    async def invoke(self, action: str, params: Dict[str, Any]) -> str:
        raise NotImplementedError


class LocalActionInvoker(ActionInvoker):
    """
    Runs registered workers as asyncio tasks in this process.

    Used by the single-process service and by tests (drain() waits for every
    dispatched action, including actions dispatched by those actions).
    """

    def __init__(self, workers: Optional[Dict[str, Any]] = None):
        self.workers: Dict[str, Any] = dict(workers or {})
        self._tasks: Set[asyncio.Task] = set()
        self.results: Dict[str, Dict[str, Any]] = {}

    def register(self, worker) -> None:
        self.workers[worker.name] = worker

    async def invoke(self, action: str, params: Dict[str, Any]) -> str:
        worker = self.workers.get(action)
        if worker is None:
            raise InvocationError(f"No worker registered for action '{action}'")
        activation_id = new_activation_id(action)
        task = asyncio.create_task(self._run(activation_id, worker, params))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Dispatched {action} ({activation_id})")
        return activation_id

    async def _run(self, activation_id: str, worker, params: Dict[str, Any]) -> None:
        self.results[activation_id] = await worker.handle(params)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class HttpActionInvoker(ActionInvoker):
    """
    Dispatches actions to a remote service (POST /actions/{name}?blocking=false)
    with retries on connection errors.
    """

    def __init__(self, base_url: str, timeout: int = 30, max_retries: int = 3, retry_delay: float = 1.0):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def invoke(self, action: str, params: Dict[str, Any]) -> str:
        url = f"{self.base_url}/actions/{action}?blocking=false"
        last_error: Optional[BaseException] = None

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            for attempt in range(self.max_retries):
                try:
                    async with session.post(url, json=params) as response:
                        if response.status in (200, 202):
                            data = await response.json()
                            activation_id = data.get('activationId') or new_activation_id(action)
                            logger.info(f"Dispatched {action} via HTTP ({activation_id})")
                            return activation_id
                        text = await response.text()
                        if response.status < 500:
                            raise InvocationError(f"Action {action} rejected: {response.status} - {text[:200]}")
                        last_error = InvocationError(f"Action {action} returned {response.status}")
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    last_error = e
                    logger.warning(f"Dispatch of {action} failed (attempt {attempt + 1}/{self.max_retries}): {e}")

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))

        raise InvocationError(f"Could not dispatch {action}: {last_error}")
