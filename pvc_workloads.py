"""Find the workload that mounts a PVC and scale it down / back up around the migration."""

import os
from dataclasses import replace

import yaml
from kubernetes import client

from pvc_errors import ClusterNotFoundError, MultipleOwnersError, api_call
from pvc_types import MANAGED_BY_LABEL, MANAGED_BY_VALUE, DaemonSetMode, WorkloadKind, WorkloadReference

PAUSE_SELECTOR = "migration-paused"

SCALABLE_KINDS = {
    WorkloadKind.DEPLOYMENT: ("read_namespaced_deployment", "patch_namespaced_deployment_scale"),
    WorkloadKind.STATEFULSET: ("read_namespaced_stateful_set", "patch_namespaced_stateful_set_scale"),
    WorkloadKind.REPLICASET: ("read_namespaced_replica_set", "patch_namespaced_replica_set_scale"),
}

# Fields the API server owns; dropped before a manifest is written for re-apply.
SERVER_METADATA = ("uid", "resourceVersion", "creationTimestamp", "generation", "managedFields", "selfLink")


def uses_claim(volumes, claim_name):
    for vol in volumes or []:
        pvc = getattr(vol, "persistent_volume_claim", None)
        if pvc and pvc.claim_name == claim_name:
            return True
    return False


def controller_ref(owner_references):
    """The controlling owner reference, falling back to the first one listed."""
    refs = owner_references or []
    for ref in refs:
        if ref.controller:
            return ref
    return refs[0] if refs else None


class WorkloadAdapter:
    def __init__(self, core_v1, apps_v1, namespace, poller=None,
                 daemonset_mode=DaemonSetMode.DELETE, manifest_dir="manifests", dry_run=False):
        self.core_v1 = core_v1
        self.apps_v1 = apps_v1
        self.namespace = namespace
        self.poller = poller
        self.daemonset_mode = daemonset_mode
        self.manifest_dir = manifest_dir
        self.dry_run = dry_run

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------
    def pods_using(self, claim_name):
        """Pods mounting `claim_name`, ignoring this tool's own transfer pods."""
        pods = api_call("list pods", self.core_v1.list_namespaced_pod, self.namespace).items
        return [
            pod for pod in pods
            if uses_claim(pod.spec.volumes, claim_name)
            and (pod.metadata.labels or {}).get(MANAGED_BY_LABEL) != MANAGED_BY_VALUE
        ]

    def discover(self, claim_name):
        """Return the single workload mounting `claim_name`, or an empty reference.

        Raises MultipleOwnersError when pods of different workloads mount the claim.
        """
        pods = self.pods_using(claim_name)
        if not pods:
            print(f"[!] No running pod found using PVC '{claim_name}'. Proceeding without quiesce.")
            return WorkloadReference(namespace=self.namespace)

        owners = {}
        for pod in pods:
            ref = self._resolve_owner(pod)
            owners.setdefault((ref.kind, ref.name), ref)
        if len(owners) > 1:
            raise MultipleOwnersError(claim_name, owners.values())

        ref = next(iter(owners.values()))
        if ref.kind is WorkloadKind.UNKNOWN:
            print(f"[!] PVC '{claim_name}' is used by '{ref.name}', which is not a supported workload. "
                  "It will not be quiesced.")
            return ref
        if ref.kind in SCALABLE_KINDS:
            ref = replace(ref, replicas=self._read_replicas(ref))
        print(f"[=] PVC '{claim_name}' is used by {ref}"
              + (f" (replicas={ref.replicas})" if ref.replicas is not None else ""))
        return ref

    def _resolve_owner(self, pod):
        owner = controller_ref(pod.metadata.owner_references)
        if owner is None:
            return WorkloadReference(WorkloadKind.UNKNOWN, pod.metadata.name, self.namespace)

        kind = WorkloadKind.parse(owner.kind)
        if kind is WorkloadKind.REPLICASET:
            rs = api_call(
                f"read ReplicaSet '{owner.name}'",
                self.apps_v1.read_namespaced_replica_set,
                owner.name,
                self.namespace,
            )
            parent = controller_ref(rs.metadata.owner_references)
            if parent is not None and parent.kind == WorkloadKind.DEPLOYMENT.value:
                return WorkloadReference(WorkloadKind.DEPLOYMENT, parent.name, self.namespace)
        elif kind is WorkloadKind.UNKNOWN:
            print(f"[!] Unsupported workload type: {owner.kind} '{owner.name}'")
        return WorkloadReference(kind, owner.name, self.namespace)

    def _read_replicas(self, ref):
        read_name, _ = SCALABLE_KINDS[ref.kind]
        workload = api_call(
            f"read {ref.kind.value} '{ref.name}'",
            getattr(self.apps_v1, read_name),
            ref.name,
            self.namespace,
        )
        replicas = workload.spec.replicas
        return 1 if replicas is None else replicas

    # -------------------------------------------------------------------------
    # Quiesce / resume
    # -------------------------------------------------------------------------
    def quiesce(self, ref, tolerant=False):
        if ref.empty:
            print("[=] No workload to quiesce.")
            return
        if ref.kind in SCALABLE_KINDS:
            print(f"[=] Scaling down {ref.kind.value} '{ref.name}'...")
            self.set_replicas(ref, 0)
        elif ref.kind is WorkloadKind.DAEMONSET:
            if self.daemonset_mode is DaemonSetMode.PAUSE:
                self._pause_daemon_set(ref)
            else:
                self._delete_daemon_set(ref, tolerant)
        else:
            print(f"[!] Unsupported workload type for '{ref.name}'. Nothing to quiesce.")

    def resume(self, ref):
        if ref.empty:
            print("[=] No workload to resume.")
            return
        if ref.kind in SCALABLE_KINDS:
            replicas = 1 if ref.replicas is None else ref.replicas
            print(f"[+] Restoring {ref.kind.value} '{ref.name}' to replicas={replicas}")
            self.set_replicas(ref, replicas)
        elif ref.kind is WorkloadKind.DAEMONSET:
            if self.daemonset_mode is DaemonSetMode.PAUSE:
                self._unpause_daemon_set(ref)
            else:
                print(f"[!] DaemonSet '{ref.name}' was deleted during quiesce and is NOT recreated. "
                      f"Re-apply it with: kubectl apply -n {self.namespace} -f {self._manifest_path(ref)}")
        else:
            print(f"[!] Unsupported workload type for '{ref.name}'. Nothing to resume.")

    def await_released(self, ref, claim_name, timeout):
        """Block until no pod mounts `claim_name`, so the volume can attach elsewhere."""
        if self.dry_run or ref.empty or ref.kind is WorkloadKind.UNKNOWN:
            return
        print(f"[~] Waiting for pods of {ref} to release PVC '{claim_name}'...")
        self.poller.wait_for(
            f"pods to release PVC '{claim_name}'",
            lambda: not self.pods_using(claim_name),
            timeout,
        )
        print(f"[✓] PVC '{claim_name}' is no longer mounted.")

    def set_replicas(self, ref, replicas):
        """Patch the scale subresource of a Deployment, StatefulSet or ReplicaSet."""
        if self.dry_run:
            print(f"[DRY-RUN] Would scale {ref.kind.value} '{ref.name}' to {replicas}")
            return
        _, patch_name = SCALABLE_KINDS[ref.kind]
        api_call(
            f"scale {ref.kind.value} '{ref.name}' to {replicas}",
            getattr(self.apps_v1, patch_name),
            name=ref.name,
            namespace=self.namespace,
            body={"spec": {"replicas": replicas}},
        )
        print(f"[~] Scaled {ref.kind.value} '{ref.name}' to {replicas} replicas")

    # -------------------------------------------------------------------------
    # DaemonSets have no replica count
    # -------------------------------------------------------------------------
    def _manifest_path(self, ref):
        return os.path.join(self.manifest_dir, f"daemonset-{ref.name}.yaml")

    def _export_daemon_set(self, ds):
        manifest = client.ApiClient().sanitize_for_serialization(ds)
        manifest.pop("status", None)
        for key in SERVER_METADATA:
            manifest.get("metadata", {}).pop(key, None)
        manifest.setdefault("apiVersion", "apps/v1")
        manifest.setdefault("kind", "DaemonSet")
        os.makedirs(self.manifest_dir, exist_ok=True)
        path = os.path.join(self.manifest_dir, f"daemonset-{ds.metadata.name}.yaml")
        with open(path, "w") as f:
            yaml.safe_dump(manifest, f, sort_keys=False)
        return path

    def _delete_daemon_set(self, ref, tolerant):
        try:
            ds = api_call(
                f"read DaemonSet '{ref.name}'",
                self.apps_v1.read_namespaced_daemon_set,
                ref.name,
                self.namespace,
            )
        except ClusterNotFoundError:
            if not tolerant:
                raise
            print(f"[~] DaemonSet '{ref.name}' was already deleted.")
            return
        path = self._export_daemon_set(ds)
        print(f"[!] DaemonSet '{ref.name}' has no replica count: it will be DELETED and will NOT be "
              f"recreated after the migration. Manifest saved to '{path}'.")
        if self.dry_run:
            print(f"[DRY-RUN] Would delete DaemonSet '{ref.name}'")
            return
        try:
            api_call(
                f"delete DaemonSet '{ref.name}'",
                self.apps_v1.delete_namespaced_daemon_set,
                ref.name,
                self.namespace,
            )
        except ClusterNotFoundError:
            if not tolerant:
                raise
        print(f"[x] Deleted DaemonSet '{ref.name}'")

    def _pause_daemon_set(self, ref):
        print(f"[=] Pausing DaemonSet '{ref.name}' (nodeSelector patch)...")
        if self.dry_run:
            print(f"[DRY-RUN] Would patch DaemonSet '{ref.name}' with nodeSelector")
            return
        api_call(
            f"pause DaemonSet '{ref.name}'",
            self.apps_v1.patch_namespaced_daemon_set,
            name=ref.name,
            namespace=self.namespace,
            body={"spec": {"template": {"spec": {"nodeSelector": {PAUSE_SELECTOR: "true"}}}}},
        )

    def _unpause_daemon_set(self, ref):
        print(f"[+] Unpausing DaemonSet '{ref.name}' (removing nodeSelector)")
        if self.dry_run:
            print(f"[DRY-RUN] Would unpatch DaemonSet '{ref.name}'")
            return
        api_call(
            f"unpause DaemonSet '{ref.name}'",
            self.apps_v1.patch_namespaced_daemon_set,
            name=ref.name,
            namespace=self.namespace,
            body={"spec": {"template": {"spec": {"nodeSelector": {PAUSE_SELECTOR: None}}}}},
        )
