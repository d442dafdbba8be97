"""Sequences a PVC migration: quiesce, copy out to a temporary PVC, swap, copy back, resume.

Every state runs through `_step`, which classifies the outcome as ok,
retryable or fatal, retries transient cluster errors with backoff and
checkpoints the state to the state file. A fatal outcome triggers a
best-effort compensation and surfaces as MigrationAbortedError.
"""

import socket
import uuid
from enum import Enum
from threading import Event

from kubernetes import watch

from pvc_credentials import CredentialProvider, generate_credential
from pvc_errors import (
    ClaimExistsError,
    ClaimNotFoundError,
    PVCMigrationError,
    MigrationAbortedError,
    TransferFailedError,
    WaitTimedOutError,
)
from pvc_lock import ClaimLock
from pvc_readiness import ReadinessPoller, pause
from pvc_state import MigrationStateStore
from pvc_transfer import TransferLauncher, sanitize_pod_name
from pvc_types import (
    Claim,
    Direction,
    MigrationState,
    PhaseOutcome,
    PodPhase,
    WorkloadReference,
)
from pvc_volumes import VolumeProvisioner
from pvc_workloads import WorkloadAdapter

STEP_TITLES = {
    MigrationState.DISCOVER: "Discover the workload using the PVC",
    MigrationState.QUIESCE: "Quiesce the workload",
    MigrationState.PROVISION_TEMP: "Provision the temporary PVC",
    MigrationState.COPY_FORWARD: "Start forward copy (original -> temporary)",
    MigrationState.AWAIT_FORWARD: "Wait for forward copy",
    MigrationState.CLEANUP_FORWARD: "Clean up forward copy and delete the original PVC",
    MigrationState.RECREATE_ORIGINAL: "Recreate the PVC under its original name",
    MigrationState.COPY_BACK: "Start copy back (temporary -> original)",
    MigrationState.AWAIT_BACK: "Wait for copy back",
    MigrationState.CLEANUP_BACK: "Clean up copy back and delete the temporary PVC",
    MigrationState.RESUME: "Resume the workload",
}

ROUND_STATES = {
    Direction.FORWARD: (MigrationState.COPY_FORWARD, MigrationState.AWAIT_FORWARD, MigrationState.CLEANUP_FORWARD),
    Direction.BACK: (MigrationState.COPY_BACK, MigrationState.AWAIT_BACK, MigrationState.CLEANUP_BACK),
}

STATES = list(MigrationState)


class StepOutcome(Enum):
    OK = "ok"
    RETRYABLE = "retryable"
    FATAL = "fatal"


def attempt(action):
    """Run `action` once and classify the result."""
    try:
        action()
    except PVCMigrationError as e:
        return (StepOutcome.RETRYABLE if getattr(e, "retryable", False) else StepOutcome.FATAL), e
    return StepOutcome.OK, None


class PVCMigrator:
    def __init__(self, request, options, core_v1, apps_v1, coordination_v1,
                 cancel=None, watch_factory=watch.Watch, credential_factory=generate_credential):
        self.request = request
        self.options = options
        self.cancel = cancel or Event()
        namespace = request.namespace
        secret_name = sanitize_pod_name(request.source_claim, "pvcm-auth")

        self.poller = ReadinessPoller(core_v1, namespace, self.cancel, options.poll_interval, watch_factory)
        self.workloads = WorkloadAdapter(
            core_v1, apps_v1, namespace, self.poller,
            daemonset_mode=options.daemonset_mode,
            manifest_dir=options.manifest_dir,
            dry_run=options.dry_run,
        )
        self.volumes = VolumeProvisioner(core_v1, namespace, options.dry_run)
        self.credentials = CredentialProvider(core_v1, namespace, secret_name, options.dry_run)
        self.transfer = TransferLauncher(core_v1, request, options, self.poller, secret_name)
        self.store = MigrationStateStore(options.state_file, options.dry_run)
        self.coordination_v1 = coordination_v1
        self.credential_factory = credential_factory

        self.lock = None
        self.workload = WorkloadReference(namespace=namespace)
        self.credential = None
        self.session = None
        self.state = MigrationState.DISCOVER
        self.tolerant = False
        self.progress = -1

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------
    def run(self):
        req = self.request
        resumed = self.store.load(req)
        holder = self.store.holder if resumed else f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.lock = ClaimLock(self.coordination_v1, req.namespace, req.source_claim, holder,
                              dry_run=self.options.dry_run)
        self.lock.acquire()

        print(f"[=] Migrating PVC '{req.namespace}/{req.source_claim}' to {req.size_gib}Gi "
              f"in SC '{req.storage_class}' via '{req.temp_claim}'")
        if resumed:
            completed = self.store.completed
            self.workload = self.store.workload or self.workload
            self.progress = completed.index if completed else -1
            # Anything from an earlier attempt may already be applied.
            self.tolerant = True
            print(f"[~] Resuming from state file '{self.store.path}' "
                  f"(last completed step: {completed.value if completed else 'none'})")
        else:
            self.store.start(req, holder)

        try:
            self._run_states()
        except Exception as e:
            # unclassified errors are compensated too
            self._compensate(e)
            self._finish_aborted()
            raise MigrationAbortedError(self.state, e) from e

        self.state = MigrationState.DONE
        self.store.record(MigrationState.DONE)
        self.store.clear()
        self.lock.release()
        if self.options.dry_run:
            print("\n[✓] Dry run complete. No changes were made.")
        else:
            print("\n[✓] PVC migration completed successfully.")

    def _run_states(self):
        req = self.request
        self._step(MigrationState.DISCOVER, self._discover)
        self._step(MigrationState.QUIESCE, self._quiesce)
        self._step(MigrationState.PROVISION_TEMP,
                   lambda: self.volumes.create(self._claim(req.temp_claim), exist_ok=self.tolerant))
        self.run_round(Direction.FORWARD, req.source_claim, req.temp_claim)
        self._step(MigrationState.RECREATE_ORIGINAL,
                   lambda: self.volumes.create(self._claim(req.source_claim), exist_ok=self.tolerant))
        self.run_round(Direction.BACK, req.temp_claim, req.source_claim)
        self._step(MigrationState.RESUME, self._resume)

    def run_round(self, direction, source_claim, dest_claim):
        """Copy `source_claim` into `dest_claim`, then retire `source_claim`."""
        copy_state, await_state, cleanup_state = ROUND_STATES[direction]
        session = self.transfer.plan(direction, source_claim, dest_claim)

        if self.store.completed is copy_state:
            # Launched but never confirmed: the pods may be gone or point at a stale address.
            print(f"[~] The {direction.name.lower()} copy was interrupted. Restarting it.")
            self.store.record(STATES[copy_state.index - 1])

        def launch():
            self.session = self.transfer.launch(session, self._ensure_credential())

        self._step(copy_state, launch)
        self._step(await_state, lambda: self._await_copy(self.session or session))
        self._step(cleanup_state, lambda: self._cleanup(self.session or session, retire=source_claim))

    # -------------------------------------------------------------------------
    # Step runner
    # -------------------------------------------------------------------------
    def _done(self, state):
        completed = self.store.completed
        return completed is not None and state.index <= completed.index

    def _step(self, state, action):
        if self._done(state):
            return
        self.state = state
        print(f"\n[>] Step {state.index + 1}/{len(STEP_TITLES)}: {STEP_TITLES[state]}")

        base_tolerant = self.tolerant
        retries = 0
        while True:
            pause(self.cancel, 0)
            outcome, error = attempt(lambda: (self.lock.renew(), action()))
            if outcome is StepOutcome.OK:
                break
            if outcome is StepOutcome.FATAL or retries >= self.options.retries:
                self.tolerant = base_tolerant
                raise error
            retries += 1
            delay = self.options.retry_backoff * 2 ** (retries - 1)
            print(f"[!] {error}. Retrying in {delay:g}s ({retries}/{self.options.retries})...")
            pause(self.cancel, delay)
            # The failed attempt may have been applied server-side.
            self.tolerant = True
        self.tolerant = base_tolerant

        self.store.record(state)
        self.progress = max(self.progress, state.index)

    # -------------------------------------------------------------------------
    # Step actions
    # -------------------------------------------------------------------------
    def _claim(self, name):
        req = self.request
        return Claim(name=name, namespace=req.namespace, size_gib=req.size_gib, storage_class=req.storage_class)

    def _ensure_credential(self):
        if self.credential is None:
            credential = self.credential_factory()
            self.credentials.publish(credential)
            self.credential = credential
        return self.credential

    def _discover(self):
        req = self.request
        if not self.volumes.exists(req.source_claim):
            raise ClaimNotFoundError(f"read PVC '{req.source_claim}'", 404, "NotFound")
        if not self.tolerant and self.volumes.exists(req.temp_claim):
            print(f"[!] Temporary PVC '{req.temp_claim}' already exists. Remove it or resume "
                  f"with the state file of the migration that created it.")
            raise ClaimExistsError(f"create PVC '{req.temp_claim}'", 409, "AlreadyExists")
        self.workload = self.workloads.discover(req.source_claim)
        self.store.set_workload(self.workload)

    def _quiesce(self):
        self.workloads.quiesce(self.workload, tolerant=self.tolerant)
        self.workloads.await_released(self.workload, self.request.source_claim, self.options.release_timeout)

    def _await_copy(self, session):
        if self.options.dry_run:
            print(f"[DRY-RUN] Would wait for pod '{session.dest_pod}' to reach {PodPhase.SUCCEEDED.value}")
            return
        outcome = self.poller.await_phase(session.dest_pod, PodPhase.SUCCEEDED, self.options.copy_timeout)
        if outcome is PhaseOutcome.FAILED:
            self.transfer.print_logs(session.dest_pod)
            raise TransferFailedError(f"copy pod '{session.dest_pod}' failed; "
                                      f"PVC '{session.source_claim}' was left untouched")
        if outcome is PhaseOutcome.TIMED_OUT:
            raise WaitTimedOutError(f"copy pod '{session.dest_pod}' did not finish "
                                    f"within {self.options.copy_timeout:g}s")
        self.transfer.verify_source(session)
        print(f"[✓] Copied PVC '{session.source_claim}' -> PVC '{session.dest_claim}'")

    def _cleanup(self, session, retire):
        grace = self.options.grace_period
        if not self.options.dry_run and grace > 0:
            print(f"[~] Sleeping {grace:g}s before clean-up.")
            pause(self.cancel, grace)
        self.transfer.print_logs(session.dest_pod)
        self.transfer.print_logs(session.source_pod)
        self.transfer.teardown(session, missing_ok=self.tolerant)
        self.session = None
        self.volumes.delete(retire, missing_ok=self.tolerant)
        if not self.options.dry_run:
            # A terminating claim still holds its name; recreating it early would clash.
            self.poller.wait_for(f"PVC '{retire}' to be deleted",
                                 lambda: not self.volumes.exists(retire), self.options.release_timeout)

    def _resume(self):
        self.workloads.resume(self.workload)
        self.credentials.revoke()

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------
    def _compensate(self, error):
        req = self.request
        print(f"\n[!] Migration stopped during '{self.state.value}': {error}")
        if self.options.dry_run:
            return
        print("[~] Attempting best-effort clean-up...")

        sessions = (
            self.transfer.plan(Direction.FORWARD, req.source_claim, req.temp_claim),
            self.transfer.plan(Direction.BACK, req.temp_claim, req.source_claim),
        )
        for session in sessions:
            self._best_effort(f"delete {session.direction.name.lower()} copy pods",
                              lambda s=session: self.transfer.teardown(s, missing_ok=True, wait=False))
        self._best_effort("delete the transfer credential", self.credentials.revoke)

        quiesce_started = self.state.index >= MigrationState.QUIESCE.index
        # The original PVC still holds the only authoritative data until the forward
        # cleanup starts; after the copy back finished the new PVC does.
        data_in_place = (self.state.index < MigrationState.CLEANUP_FORWARD.index
                         or self.state is MigrationState.RESUME)
        if not quiesce_started or self.workload.empty:
            return
        if data_in_place:
            restored = self._best_effort(f"restore {self.workload}", lambda: self.workloads.resume(self.workload))
            if restored and self.state is not MigrationState.RESUME:
                self._best_effort("rewind the state file", lambda: self.store.record(MigrationState.DISCOVER))
        else:
            print(f"[!] {self.workload} is left scaled down: PVC '{req.source_claim}' is being replaced. "
                  f"The data is in PVC '{req.temp_claim}'.")

    def _best_effort(self, description, action):
        try:
            action()
        except Exception as e:
            print(f"[!] Could not {description}: {e}")
            return False
        return True

    def _finish_aborted(self):
        if self.options.dry_run:
            return
        if self.progress >= MigrationState.PROVISION_TEMP.index:
            print(f"[!] State kept in '{self.store.path}' and Lease '{self.lock.name}' kept. "
                  "Fix the cause and re-run the same command to resume.")
            return
        self.store.clear()
        self._best_effort(f"release Lease '{self.lock.name}'", self.lock.release)
