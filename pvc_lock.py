"""Lease guarding a claim against concurrent migrations."""

import datetime

from kubernetes import client

from pvc_errors import ClusterConflictError, ClusterNotFoundError, MigrationLockedError, api_call
from pvc_transfer import sanitize_pod_name
from pvc_types import MANAGED_BY_LABEL, MANAGED_BY_VALUE


class ClaimLock:
    """A coordination.k8s.io Lease named after the claim.

    The lease is not renewed in the background and never expires on its own:
    a lease left behind by a crashed run is re-acquired by resuming with the
    same state file (same holder), or removed by hand.
    """

    def __init__(self, coordination_v1, namespace, claim_name, holder, duration=3600, dry_run=False):
        self.coordination_v1 = coordination_v1
        self.namespace = namespace
        self.name = sanitize_pod_name(claim_name, "pvcm-lock")
        self.claim_name = claim_name
        self.holder = holder
        self.duration = duration
        self.dry_run = dry_run
        self.held = False

    def _now(self):
        return datetime.datetime.now(datetime.timezone.utc)

    def acquire(self):
        if self.dry_run:
            print(f"[DRY-RUN] Would acquire Lease '{self.name}'")
            return
        now = self._now()
        body = client.V1Lease(
            metadata=client.V1ObjectMeta(
                name=self.name,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                annotations={"pvc-migrate/claim": self.claim_name},
            ),
            spec=client.V1LeaseSpec(
                holder_identity=self.holder,
                lease_duration_seconds=self.duration,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            api_call(f"create Lease '{self.name}'", self.coordination_v1.create_namespaced_lease,
                     self.namespace, body)
        except ClusterConflictError:
            lease = api_call(f"read Lease '{self.name}'", self.coordination_v1.read_namespaced_lease,
                             self.name, self.namespace)
            current = lease.spec.holder_identity if lease.spec else None
            if current != self.holder:
                raise MigrationLockedError(
                    f"PVC '{self.claim_name}' is locked by another migration (holder '{current}'). "
                    f"If no migration is running, delete it with: "
                    f"kubectl delete lease {self.name} -n {self.namespace}"
                )
            print(f"[~] Re-acquired Lease '{self.name}' from the interrupted run")
        self.held = True
        print(f"[+] Acquired Lease '{self.name}' for PVC '{self.claim_name}'")

    def renew(self):
        if self.dry_run or not self.held:
            return
        api_call(
            f"renew Lease '{self.name}'",
            self.coordination_v1.patch_namespaced_lease,
            self.name,
            self.namespace,
            {"spec": {"renewTime": self._now().strftime("%Y-%m-%dT%H:%M:%S.%fZ")}},
        )

    def release(self):
        if self.dry_run or not self.held:
            return
        try:
            api_call(f"delete Lease '{self.name}'", self.coordination_v1.delete_namespaced_lease,
                     self.name, self.namespace)
        except ClusterNotFoundError:
            pass
        self.held = False
        print(f"[x] Released Lease '{self.name}'")
