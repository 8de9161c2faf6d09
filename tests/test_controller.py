"""
Unit tests for the PodController

The work queue is driven directly on the test event loop with a fake
reconciler. The watch loop is driven with a fake KubernetesClient whose
list/watch calls return canned pods.
"""

import asyncio
import threading

import pytest
from unittest.mock import Mock

from kubernetes import client
from kubernetes.client.rest import ApiException
from tenacity import RetryCallState, Retrying

from reaper.services.controller import PodController, is_retryable_watch_error, pod_key
from reaper.services.reconciler import ReconcileAction, RunningSidecarError
from conftest import make_pod


class FakeReconciler:
    """Records every pass; optionally blocks on a gate or raises."""

    def __init__(self, action=None, error=None, retry_after=0.01):
        self.action = action or ReconcileAction.await_change()
        self.error = error
        self.retry_after = retry_after
        self.gate = None
        self.calls = []
        self.policy_calls = []
        self.running = 0
        self.max_running = 0

    async def reconcile(self, pod):
        self.calls.append(pod)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return self.action
        finally:
            self.running -= 1

    def error_policy(self, pod, error):
        self.policy_calls.append(error)
        return ReconcileAction.requeue(self.retry_after)


def pod_version(name, version, namespace="default"):
    pod = make_pod(name, labels={"app": name}, namespace=namespace)
    pod.metadata.resource_version = version
    return pod


def pod_list(pods, resource_version="100"):
    return client.V1PodList(items=pods, metadata=client.V1ListMeta(resource_version=resource_version))


class TestPodKey:
    def test_namespace_and_name(self):
        assert pod_key(make_pod("job-7", namespace="team-a")) == "team-a/job-7"

    def test_missing_namespace(self):
        assert pod_key(make_pod("job-7", namespace=None)) == "default/job-7"


class TestWorkQueue:
    @pytest.mark.asyncio
    async def test_enqueue_reconciles_pod(self):
        reconciler = FakeReconciler()
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")
        pod = pod_version("job-7", "1")

        controller.enqueue(pod)
        await controller.drain()

        assert reconciler.calls == [pod]

    @pytest.mark.asyncio
    async def test_change_during_pass_runs_again_with_latest_pod(self):
        reconciler = FakeReconciler()
        reconciler.gate = asyncio.Event()
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")
        first, second, third = pod_version("job-7", "1"), pod_version("job-7", "2"), pod_version("job-7", "3")

        controller.enqueue(first)
        await asyncio.sleep(0)
        controller.enqueue(second)
        controller.enqueue(third)
        assert len(reconciler.calls) == 1

        reconciler.gate.set()
        await controller.drain()

        assert reconciler.calls == [first, third]
        assert reconciler.max_running == 1

    @pytest.mark.asyncio
    async def test_distinct_pods_run_concurrently(self):
        reconciler = FakeReconciler()
        reconciler.gate = asyncio.Event()
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")

        controller.enqueue(pod_version("job-7", "1"))
        controller.enqueue(pod_version("job-8", "1"))
        await asyncio.sleep(0)

        assert reconciler.running == 2
        reconciler.gate.set()
        await controller.drain()

    @pytest.mark.asyncio
    async def test_failed_pass_is_retried_after_error_policy(self):
        reconciler = FakeReconciler(error=RunningSidecarError("job-7", ValueError("no labels found on pod")))
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")

        controller.enqueue(pod_version("job-7", "1"))
        await asyncio.sleep(0.1)
        controller.stop()
        await controller.drain()

        assert len(reconciler.calls) >= 2
        assert isinstance(reconciler.policy_calls[0], RunningSidecarError)

    @pytest.mark.asyncio
    async def test_unexpected_exception_goes_through_error_policy(self):
        reconciler = FakeReconciler(error=RuntimeError("boom"))
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")

        controller.enqueue(pod_version("job-7", "1"))
        await controller.drain()
        controller.stop()

        assert isinstance(reconciler.policy_calls[0], RuntimeError)

    @pytest.mark.asyncio
    async def test_requeue_after_success(self):
        reconciler = FakeReconciler(action=ReconcileAction.requeue(0.01))
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")

        controller.enqueue(pod_version("job-7", "1"))
        await asyncio.sleep(0.1)
        controller.stop()
        await controller.drain()

        assert len(reconciler.calls) >= 2

    @pytest.mark.asyncio
    async def test_await_change_is_not_requeued(self):
        reconciler = FakeReconciler()
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")

        controller.enqueue(pod_version("job-7", "1"))
        await controller.drain()
        await asyncio.sleep(0.05)

        assert len(reconciler.calls) == 1
        assert controller._timers == {}

    @pytest.mark.asyncio
    async def test_forget_cancels_requeue(self):
        reconciler = FakeReconciler(action=ReconcileAction.requeue(0.05))
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")
        pod = pod_version("job-7", "1")

        controller.enqueue(pod)
        await controller.drain()
        controller.forget(pod)
        await asyncio.sleep(0.1)

        assert len(reconciler.calls) == 1
        assert "default/job-7" not in controller._pods

    @pytest.mark.asyncio
    async def test_replace_drops_unlisted_pods(self):
        reconciler = FakeReconciler()
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")
        kept, dropped = pod_version("job-7", "1"), pod_version("job-8", "1")

        controller.enqueue(kept)
        controller.enqueue(dropped)
        await controller.drain()

        controller.replace([kept])
        await controller.drain()

        assert set(controller._pods) == {"default/job-7"}
        assert reconciler.calls.count(kept) == 2

    @pytest.mark.asyncio
    async def test_stop_cancels_timers_and_ignores_new_pods(self):
        reconciler = FakeReconciler(action=ReconcileAction.requeue(0.05))
        controller = PodController(Mock(), reconciler, "nais.io/naisjob=true")

        controller.enqueue(pod_version("job-7", "1"))
        await controller.drain()
        controller.stop()
        controller.enqueue(pod_version("job-8", "1"))
        await asyncio.sleep(0.1)

        assert len(reconciler.calls) == 1
        assert controller._timers == {}


class TestWatchLoop:
    @pytest.mark.asyncio
    async def test_list_then_watch(self):
        listed = [pod_version("job-7", "90")]
        added = pod_version("job-8", "101")
        modified = pod_version("job-7", "102")
        deleted = pod_version("job-8", "103")

        k8s = Mock()
        k8s.list_pods = Mock(return_value=pod_list(listed))
        controller = PodController(k8s, FakeReconciler(), "nais.io/naisjob=true", watch_timeout_seconds=60)

        def watch_pods(watcher, label_selector, resource_version, timeout_seconds):
            if k8s.watch_pods.call_count == 1:
                return iter([
                    {"type": "ADDED", "object": added},
                    {"type": "MODIFIED", "object": modified},
                    {"type": "BOOKMARK", "object": {"metadata": {}}},
                    {"type": "DELETED", "object": deleted},
                ])
            controller._stop_event.set()
            return iter([])

        k8s.watch_pods = Mock(side_effect=watch_pods)
        controller.replace = Mock()
        controller.enqueue = Mock()
        controller.forget = Mock()
        controller._loop = asyncio.get_running_loop()

        await asyncio.to_thread(controller._list_and_watch)
        await asyncio.sleep(0)

        k8s.list_pods.assert_called_once_with("nais.io/naisjob=true")
        controller.replace.assert_called_once_with(listed)
        assert [c.args[0] for c in controller.enqueue.call_args_list] == [added, modified]
        controller.forget.assert_called_once_with(deleted)

        first, second = k8s.watch_pods.call_args_list
        assert first.args[1:] == ("nais.io/naisjob=true", "100", 60)
        assert second.args[2] == "103"

    @pytest.mark.asyncio
    async def test_forbidden_stops_controller(self):
        k8s = Mock()
        k8s.list_pods = Mock(side_effect=ApiException(status=403, reason="Forbidden"))
        controller = PodController(k8s, FakeReconciler(), "nais.io/naisjob=true")

        with pytest.raises(ApiException) as exc_info:
            await asyncio.wait_for(controller.run(), timeout=5)

        assert exc_info.value.status == 403
        k8s.list_pods.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_ends_run(self):
        reconciler = FakeReconciler()
        k8s = Mock()
        k8s.list_pods = Mock(return_value=pod_list([pod_version("job-7", "90")]))
        controller = PodController(k8s, reconciler, "nais.io/naisjob=true")
        watching = threading.Event()

        def watch_pods(watcher, label_selector, resource_version, timeout_seconds):
            watching.set()
            controller._stop_event.wait(0.05)
            return iter([])

        k8s.watch_pods = Mock(side_effect=watch_pods)

        run = asyncio.create_task(controller.run())
        await asyncio.to_thread(watching.wait, 5)
        controller.stop()
        await asyncio.wait_for(run, timeout=5)

        assert [p.metadata.name for p in reconciler.calls] == ["job-7"]


class TestRetryableWatchErrors:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors_are_fatal(self, status):
        assert not is_retryable_watch_error(ApiException(status=status))

    @pytest.mark.parametrize("status", [410, 500, 503])
    def test_api_errors_are_retried(self, status):
        assert is_retryable_watch_error(ApiException(status=status))

    def test_connection_errors_are_retried(self):
        assert is_retryable_watch_error(ConnectionResetError("reset"))


class TestWatchBackoff:
    def _state(self, attempt_number):
        state = RetryCallState(Retrying(), None, (), {})
        state.attempt_number = attempt_number
        return state

    def test_counts_failures_since_last_successful_list(self):
        controller = PodController(Mock(), FakeReconciler(), "nais.io/naisjob=true")
        controller._backoff = Mock(return_value=0.5)
        controller._listed_attempt = 6
        state = self._state(7)

        assert controller._watch_backoff(state) == 0.5

        assert controller._backoff.call_args.args[0].attempt_number == 2
        assert state.attempt_number == 7

    def test_grows_while_listing_keeps_failing(self):
        controller = PodController(Mock(), FakeReconciler(), "nais.io/naisjob=true")
        controller._backoff = Mock(return_value=0.5)

        controller._watch_backoff(self._state(4))

        assert controller._backoff.call_args.args[0].attempt_number == 4

    def test_healthy_watch_resets_to_smallest_step(self):
        controller = PodController(Mock(), FakeReconciler(), "nais.io/naisjob=true")
        controller._listed_attempt = 9

        for _ in range(20):
            assert 0 <= controller._watch_backoff(self._state(9)) <= 1

    @pytest.mark.asyncio
    async def test_successful_list_records_attempt(self):
        k8s = Mock()
        k8s.list_pods = Mock(return_value=pod_list([]))
        controller = PodController(k8s, FakeReconciler(), "nais.io/naisjob=true")

        def watch_pods(watcher, label_selector, resource_version, timeout_seconds):
            controller._stop_event.set()
            return iter([])

        k8s.watch_pods = Mock(side_effect=watch_pods)
        controller.replace = Mock()
        controller._loop = asyncio.get_running_loop()

        await asyncio.to_thread(controller._list_and_watch, 4)

        assert controller._listed_attempt == 4

    @pytest.mark.asyncio
    async def test_failed_list_keeps_previous_attempt(self):
        k8s = Mock()
        k8s.list_pods = Mock(side_effect=ApiException(status=500))
        controller = PodController(k8s, FakeReconciler(), "nais.io/naisjob=true")
        controller._loop = asyncio.get_running_loop()
        controller._listed_attempt = 2

        with pytest.raises(ApiException):
            await asyncio.to_thread(controller._list_and_watch, 5)

        assert controller._listed_attempt == 2
