"""Blocking waits on pod lifecycle, bounded by a deadline and a cancellation token."""

import math
import time
from threading import Event

from kubernetes import watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from pvc_errors import (
    TRANSIENT_STATUSES,
    ClusterNotFoundError,
    MigrationCancelledError,
    TransientClusterError,
    WaitTimedOutError,
    api_call,
    translate_api_error,
)
from pvc_types import PhaseOutcome, PodPhase

TERMINAL_PHASES = {PodPhase.SUCCEEDED.value, PodPhase.FAILED.value}


def pause(cancel, seconds):
    """Sleep for `seconds` unless cancelled first."""
    if seconds > 0 and cancel.wait(seconds):
        raise MigrationCancelledError("cancelled while waiting")
    if cancel.is_set():
        raise MigrationCancelledError("cancelled while waiting")


def is_ready(pod):
    for condition in (pod.status.conditions or []) if pod.status else []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _swallowable(exc):
    return not exc.status or exc.status in TRANSIENT_STATUSES or exc.status == 404


class ReadinessPoller:
    """Waits for pods in one namespace to reach a phase.

    Phase changes are consumed from a watch on the single pod; the watch is
    reopened every `interval` seconds so cancellation and the deadline are
    honoured even when the API server sends nothing.
    """

    def __init__(self, core_v1, namespace, cancel=None, interval=5, watch_factory=watch.Watch):
        self.core_v1 = core_v1
        self.namespace = namespace
        self.cancel = cancel or Event()
        self.interval = interval
        self.watch_factory = watch_factory

    def await_phase(self, pod_name, target, timeout, require_ready=False):
        label = f"{target.value} and Ready" if require_ready else target.value
        print(f"[~] Waiting for pod '{pod_name}' to reach {label} (timeout {timeout:g}s)...")
        deadline = time.monotonic() + timeout
        while True:
            pause(self.cancel, 0)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                print(f"[!] Timed out waiting for pod '{pod_name}' to reach {label}")
                return PhaseOutcome.TIMED_OUT
            try:
                outcome = self._watch_once(pod_name, target, require_ready, remaining)
            except ApiException as e:
                if not _swallowable(e):
                    raise translate_api_error(e, f"watch pod '{pod_name}'") from e
                self._retry_watch(pod_name, f"{e.status} {e.reason}", deadline)
                continue
            except HTTPError as e:
                # connection reset or chunked body cut off mid-stream
                self._retry_watch(pod_name, e, deadline)
                continue
            if outcome is PhaseOutcome.REACHED:
                print(f"[✓] Pod '{pod_name}' is {label}.")
                return outcome
            if outcome is PhaseOutcome.FAILED:
                print(f"[!] Pod '{pod_name}' ended without reaching {target.value}")
                return outcome

    def _retry_watch(self, pod_name, detail, deadline):
        print(f"[!] Transient error watching pod '{pod_name}': {detail}. Retrying...")
        pause(self.cancel, min(self.interval, max(deadline - time.monotonic(), 0)))

    def _watch_once(self, pod_name, target, require_ready, remaining):
        window = max(1, math.ceil(min(remaining, self.interval)))
        w = self.watch_factory()
        try:
            for event in w.stream(
                self.core_v1.list_namespaced_pod,
                self.namespace,
                field_selector=f"metadata.name={pod_name}",
                timeout_seconds=window,
            ):
                if self.cancel.is_set():
                    return None
                if event["type"] in ("ERROR", "DELETED"):
                    continue
                outcome = self._evaluate(event["object"], target, require_ready)
                if outcome is not None:
                    return outcome
        finally:
            w.stop()
        return None

    @staticmethod
    def _evaluate(pod, target, require_ready):
        phase = pod.status.phase if pod.status else None
        if phase == target.value and (not require_ready or is_ready(pod)):
            return PhaseOutcome.REACHED
        if phase in TERMINAL_PHASES and phase != target.value:
            return PhaseOutcome.FAILED
        return None

    def wait_for(self, description, check, timeout):
        """Poll `check` until it returns True; raise WaitTimedOutError after `timeout` seconds."""
        deadline = time.monotonic() + timeout
        while True:
            pause(self.cancel, 0)
            try:
                if check():
                    return
            except TransientClusterError as e:
                print(f"[!] {e}. Retrying...")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise WaitTimedOutError(f"timed out after {timeout:g}s waiting for {description}")
            pause(self.cancel, min(self.interval, remaining))

    def await_gone(self, pod_name, timeout):
        def check_deleted():
            try:
                api_call(f"read pod '{pod_name}'", self.core_v1.read_namespaced_pod, pod_name, self.namespace)
            except ClusterNotFoundError:
                return True
            return False

        self.wait_for(f"pod '{pod_name}' to be deleted", check_deleted, timeout)
