"""
Per-client ordered event processing.

Campaign side effects of a sale (trigger evaluation, attribution, immediate
delivery) depend on "purchases so far", so one client's events must run in
the order their writes committed. The router keeps N single-thread
executors and always sends a client to the same one: a client's events run
one after another in submission order, different clients run in parallel.

With EVENT_ROUTER_WORKERS = 0 tasks run inline in the caller's thread and
app context (used by tests and one-off CLI runs).
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List

from flask import current_app

logger = logging.getLogger(__name__)

EVENT_ROUTER_EXTENSION_KEY = 'loyalty_core.event_router'


class ClientEventRouter:
    """
    Usage:
        router = ClientEventRouter(workers=4, app=app)
        future = router.submit(client_id, automation.process_event, event)
    """

    def __init__(self, workers: int = 4, app=None):
        self.app = app
        self.workers = max(0, int(workers or 0))
        self._executors: List[ThreadPoolExecutor] = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f'client-events-{i}')
            for i in range(self.workers)
        ]

    def shard_for(self, client_id) -> int:
        return hash(client_id) % self.workers if self.workers else 0

    def submit(self, client_id, fn: Callable, *args, **kwargs) -> Future:
        """Queue fn behind every earlier task of the same client."""
        if not self._executors:
            future: Future = Future()
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                logger.exception('[EventRouter] Inline task for client %s failed', client_id)
                future.set_exception(e)
            return future

        executor = self._executors[self.shard_for(client_id)]
        return executor.submit(self._run, client_id, fn, args, kwargs)

    def _run(self, client_id, fn: Callable, args, kwargs):
        try:
            if self.app is None:
                return fn(*args, **kwargs)
            with self.app.app_context():
                return fn(*args, **kwargs)
        except Exception:
            logger.exception('[EventRouter] Task for client %s failed', client_id)
            raise

    def shutdown(self, wait: bool = True) -> None:
        for executor in self._executors:
            executor.shutdown(wait=wait)


def init_event_router(app) -> ClientEventRouter:
    router = ClientEventRouter(app.config.get('EVENT_ROUTER_WORKERS', 4), app=app)
    app.extensions[EVENT_ROUTER_EXTENSION_KEY] = router
    return router


def get_event_router() -> ClientEventRouter:
    return current_app.extensions[EVENT_ROUTER_EXTENSION_KEY]
