"""
Pod Controller

Feeds watched pods to the Reconciler and schedules the follow-up passes it
asks for.

Watch loop (worker thread):
1. Lists matching pods and enqueues every one of them.
2. Opens a watch from the list's resourceVersion; ADDED/MODIFIED pods are
   enqueued, DELETED pods are forgotten.
3. Transient API errors (including 410 Gone) re-list and re-watch with
   jittered exponential backoff capped at 30 s. The backoff restarts from
   its smallest step after every successful list. 401/403 are configuration
   errors and stop the controller.

Work queue (event loop):
- Reconciliations are serialized per pod key. A change that arrives while
  the key is being reconciled marks it dirty; the running worker picks up
  the latest pod as soon as the current pass ends.
- Requeues are loop timers. A fresh watch event cancels the pending timer.
- stop() ends the watch and cancels timers; passes already running are
  awaited, never cancelled.
"""

import asyncio
import copy
import logging
import threading
from typing import Dict, List, Optional, Set

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_when_event_set,
    wait_random_exponential,
)

from .kubernetes.client import KubernetesClient
from .reconciler import ReconcileAction, ReconcileError, Reconciler

logger = logging.getLogger(__name__)

# RBAC / auth problems will not go away by retrying
FATAL_API_STATUSES = (401, 403)

MAX_WATCH_BACKOFF_SECONDS = 30


def pod_key(pod: client.V1Pod) -> str:
    metadata = pod.metadata
    return f"{metadata.namespace or 'default'}/{metadata.name}"


def is_retryable_watch_error(exception: BaseException) -> bool:
    """Everything except authentication/authorization failures is worth another watch."""
    if isinstance(exception, ApiException):
        return exception.status not in FATAL_API_STATUSES
    return isinstance(exception, Exception)


class PodController:
    def __init__(
        self,
        k8s: KubernetesClient,
        reconciler: Reconciler,
        label_selector: str,
        watch_timeout_seconds: int = 300
    ):
        self.k8s = k8s
        self.reconciler = reconciler
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds

        # Latest pod object seen by the watch, per key
        self._pods: Dict[str, client.V1Pod] = {}
        self._active: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._workers: Set[asyncio.Task] = set()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._done: Optional[asyncio.Future] = None
        self._stop_event = threading.Event()
        self._active_watcher: Optional[watch.Watch] = None
        self._watcher_lock = threading.Lock()

        # Watch backoff grows with the failures since the last successful list
        self._backoff = wait_random_exponential(multiplier=1, max=MAX_WATCH_BACKOFF_SECONDS)
        self._listed_attempt = 1

    # =========================================================================
    # WORK QUEUE
    # =========================================================================

    def enqueue(self, pod: client.V1Pod) -> None:
        """Record the latest state of a pod and reconcile it."""
        key = pod_key(pod)
        self._pods[key] = pod
        self._schedule(key)

    def replace(self, pods: List[client.V1Pod]) -> None:
        """Enqueue a fresh list of pods, dropping every pod that is no longer in it."""
        listed = {pod_key(pod) for pod in pods}
        for key in list(self._pods):
            if key not in listed:
                self._forget_key(key)
        for pod in pods:
            self.enqueue(pod)

    def forget(self, pod: client.V1Pod) -> None:
        self._forget_key(pod_key(pod))

    def _forget_key(self, key: str) -> None:
        self._pods.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _schedule(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        if self._stop_event.is_set() or key not in self._pods:
            return

        if key in self._active:
            self._dirty.add(key)
            return

        self._active.add(key)
        worker = asyncio.get_running_loop().create_task(self._process(key))
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

    async def _process(self, key: str) -> None:
        try:
            while True:
                pod = self._pods.get(key)
                if pod is None:
                    return
                self._dirty.discard(key)

                action = await self._reconcile(pod)

                if key in self._dirty and not self._stop_event.is_set():
                    logger.debug(f"{key}: changed during reconcile, running again")
                    continue
                self._requeue(key, action)
                return
        finally:
            self._active.discard(key)
            self._dirty.discard(key)

    async def _reconcile(self, pod: client.V1Pod) -> ReconcileAction:
        key = pod_key(pod)
        try:
            action = await self.reconciler.reconcile(pod)
            logger.debug(f"reconciled {key}, planned action: {action}")
            return action
        except ReconcileError as e:
            logger.warning(f"reconcile failed: {e}")
            return self.reconciler.error_policy(pod, e)
        except Exception as e:
            logger.error(f"reconcile failed for {key}: {e}", exc_info=True)
            return self.reconciler.error_policy(pod, e)

    def _requeue(self, key: str, action: ReconcileAction) -> None:
        if action.requeue_after is None or self._stop_event.is_set():
            return
        if key not in self._pods:
            return
        self._timers[key] = asyncio.get_running_loop().call_later(
            action.requeue_after,
            self._schedule,
            key
        )

    # =========================================================================
    # WATCH LOOP
    # =========================================================================

    def _submit(self, pod: client.V1Pod, deleted: bool = False) -> None:
        """Hand a pod from the watch thread to the event loop."""
        callback = self.forget if deleted else self.enqueue
        try:
            self._loop.call_soon_threadsafe(callback, pod)
        except RuntimeError:
            # Event loop already closed during shutdown
            self._stop_event.set()

    def _list_and_watch(self, attempt_number: int = 1) -> None:
        pods = self.k8s.list_pods(self.label_selector)
        self._listed_attempt = attempt_number
        resource_version = pods.metadata.resource_version if pods.metadata else None
        try:
            self._loop.call_soon_threadsafe(self.replace, list(pods.items))
        except RuntimeError:
            self._stop_event.set()
            return
        logger.info(f"Listed {len(pods.items)} pods, starting watch from resourceVersion {resource_version}")

        while not self._stop_event.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                for event in self.k8s.watch_pods(
                    watcher,
                    self.label_selector,
                    resource_version,
                    self.watch_timeout_seconds
                ):
                    if self._stop_event.is_set():
                        break

                    pod = event.get("object")
                    if not isinstance(pod, client.V1Pod):
                        continue

                    if pod.metadata and pod.metadata.resource_version:
                        resource_version = pod.metadata.resource_version

                    event_type = event.get("type")
                    if event_type in ("ADDED", "MODIFIED"):
                        self._submit(pod)
                    elif event_type == "DELETED":
                        self._submit(pod, deleted=True)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def _watch_forever(self) -> None:
        for attempt in Retrying(
            stop=stop_when_event_set(self._stop_event),
            wait=self._watch_backoff,
            retry=retry_if_exception(is_retryable_watch_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                self._list_and_watch(attempt.retry_state.attempt_number)

    def _watch_backoff(self, retry_state: RetryCallState) -> float:
        """Jittered exponential backoff, counted from the attempt that last listed pods."""
        since_listed = copy.copy(retry_state)
        since_listed.attempt_number = retry_state.attempt_number - self._listed_attempt + 1
        return self._backoff(since_listed)

    def _watch_thread(self, done: asyncio.Future) -> None:
        try:
            self._watch_forever()
        except BaseException as e:
            self._resolve(done, e)
        else:
            self._resolve(done, None)

    def _resolve(self, done: asyncio.Future, error: Optional[BaseException]) -> None:
        def resolve():
            if done.done():
                return
            if error is None:
                done.set_result(None)
            else:
                done.set_exception(error)

        try:
            self._loop.call_soon_threadsafe(resolve)
        except RuntimeError:
            # Event loop already closed during shutdown
            pass

    async def run(self) -> None:
        """
        Watch pods until stop() is called.

        The watch runs in a daemon thread so a stop never waits for a
        blocked watch request to time out.

        Raises:
            ApiException: If the API denies access to pods (401/403)
        """
        self._loop = asyncio.get_running_loop()
        self._stop_event.clear()
        self._listed_attempt = 1
        self._done = self._loop.create_future()
        logger.info(f"Watching pods with label selector {self.label_selector}")

        thread = threading.Thread(
            target=self._watch_thread,
            args=(self._done,),
            name="pod-watch",
            daemon=True
        )
        thread.start()

        try:
            await self._done
        except ApiException as e:
            if e.status in FATAL_API_STATUSES:
                logger.error(
                    f"Kubernetes API access denied (status={e.status}). "
                    f"Check controller RBAC and service account permissions."
                )
            raise
        finally:
            self.stop()
            await self.drain()
            logger.info("Pod controller stopped")

    def stop(self) -> None:
        """Request a stop and interrupt any open watch stream."""
        self._stop_event.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        if self._done is not None and not self._done.done():
            self._done.set_result(None)

    async def drain(self) -> None:
        """Wait for in-flight reconciliations to finish."""
        if self._workers:
            logger.info(f"Waiting for {len(self._workers)} in-flight reconciliations")
            await asyncio.gather(*list(self._workers), return_exceptions=True)
