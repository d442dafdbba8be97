"""Source/destination pod pair that copies one PVC into another over SSH + rsync.

The source pod mounts the claim holding the data and runs sshd. The
destination pod mounts the claim to fill and pulls with rsync from the source
pod's IP. Both read the one-time password from the mounted credential Secret,
so it never appears in a command line or manifest.
"""

import hashlib
import os
import re
from dataclasses import replace

import yaml
from kubernetes.client.exceptions import ApiException

from pvc_credentials import CREDENTIAL_MOUNT, PASSWORD_FILE
from pvc_errors import (
    ClusterNotFoundError,
    TransferFailedError,
    WaitTimedOutError,
    api_call,
)
from pvc_types import MANAGED_BY_LABEL, MANAGED_BY_VALUE, MOUNT_PATH, PhaseOutcome, PodPhase, Role, TransferSession

MANAGED_BY = {MANAGED_BY_LABEL: MANAGED_BY_VALUE}

SOURCE_SCRIPT = """\
apk add --no-cache openssh rsync &&
echo "{username}:$(cat {password_file})" | chpasswd &&
sed -i 's/^#\\?PermitRootLogin .*/PermitRootLogin yes/' /etc/ssh/sshd_config &&
sed -i 's/^#\\?PasswordAuthentication .*/PasswordAuthentication yes/' /etc/ssh/sshd_config &&
ssh-keygen -A &&
exec /usr/sbin/sshd -D -e -p {port}
"""

DEST_SCRIPT = """\
apk add --no-cache rsync openssh-client sshpass &&
sshpass -f {password_file} rsync -aHAXSc --delete --bwlimit={bwlimit} --progress \
-e "ssh -p {port} -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null" \
{username}@{address}:{mount}/ {mount}/
"""


def sanitize_pod_name(name, prefix):
    """Derive a DNS-1123 object name from a claim name.

    When lowercasing, stripping or truncating changed the claim name, a short
    digest of the original is appended so distinct claims keep distinct names.
    """
    base = re.sub(r'[^a-z0-9\-]', '', name.lower())[:40].rstrip('-')
    if base != name:
        base = f"{base}-{hashlib.sha1(name.encode()).hexdigest()[:6]}"
    return f"{prefix}-{base}"


def rsync_host(address):
    # rsync needs IPv6 literals bracketed in user@host:path
    return f"[{address}]" if ":" in address else address


class TransferLauncher:
    def __init__(self, core_v1, request, options, poller, secret_name):
        self.core_v1 = core_v1
        self.request = request
        self.options = options
        self.poller = poller
        self.secret_name = secret_name
        self.namespace = request.namespace
        self.dry_run = options.dry_run

    # -------------------------------------------------------------------------
    # Manifests
    # -------------------------------------------------------------------------
    def plan(self, direction, source_claim, dest_claim):
        prefix = f"pvcm-{direction.value}"
        return TransferSession(
            direction=direction,
            source_claim=source_claim,
            dest_claim=dest_claim,
            source_pod=sanitize_pod_name(source_claim, f"{prefix}-{Role.SOURCE.value}"),
            dest_pod=sanitize_pod_name(dest_claim, f"{prefix}-{Role.DESTINATION.value}"),
        )

    def _pod(self, session, role, claim, container, restart_policy):
        pod_name = session.source_pod if role is Role.SOURCE else session.dest_pod
        container["volumeMounts"] = [
            {"name": "data", "mountPath": MOUNT_PATH},
            {"name": "credential", "mountPath": CREDENTIAL_MOUNT, "readOnly": True},
        ]
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": pod_name,
                "namespace": self.namespace,
                "labels": {
                    **MANAGED_BY,
                    "pvc-migrate/role": role.value,
                    "pvc-migrate/direction": session.direction.value,
                },
            },
            "spec": {
                "restartPolicy": restart_policy,
                "containers": [container],
                "volumes": [
                    {"name": "data", "persistentVolumeClaim": {"claimName": claim}},
                    {"name": "credential", "secret": {"secretName": self.secret_name, "defaultMode": 0o400}},
                ],
            },
        }

    def source_manifest(self, session, credential):
        port = self.request.ssh_port
        script = SOURCE_SCRIPT.format(
            username=credential.username,
            password_file=PASSWORD_FILE,
            port=port,
        )
        container = {
            "name": "ssh-server",
            "image": self.options.image,
            "command": ["/bin/sh", "-c"],
            "args": [script],
            "ports": [{"containerPort": port}],
            "readinessProbe": {"tcpSocket": {"port": port}, "periodSeconds": 5},
        }
        return self._pod(session, Role.SOURCE, session.source_claim, container, "Always")

    def dest_manifest(self, session, credential, address):
        script = DEST_SCRIPT.format(
            password_file=PASSWORD_FILE,
            bwlimit=self.request.bandwidth_limit,
            port=self.request.ssh_port,
            username=credential.username,
            address=rsync_host(address),
            mount=MOUNT_PATH,
        )
        container = {
            "name": "rsync-client",
            "image": self.options.image,
            "command": ["/bin/sh", "-c"],
            "args": [script],
        }
        return self._pod(session, Role.DESTINATION, session.dest_claim, container, "Never")

    def _export(self, manifest):
        os.makedirs(self.options.manifest_dir, exist_ok=True)
        path = os.path.join(self.options.manifest_dir, f"{manifest['metadata']['name']}.yaml")
        with open(path, "w") as f:
            yaml.safe_dump(manifest, f, sort_keys=False)
        return path

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def _create(self, manifest):
        name = manifest["metadata"]["name"]
        api_call(f"create pod '{name}'", self.core_v1.create_namespaced_pod, self.namespace, manifest)
        print(f"[+] Created pod '{name}'")

    def launch(self, session, credential):
        """Start the source pod, wait until it serves SSH, then start the destination pod.

        Returns the session with the source pod's address and uid filled in.
        """
        print(f"[~] Starting {session.direction.name.lower()} copy: "
              f"PVC '{session.source_claim}' -> PVC '{session.dest_claim}'")
        if self.dry_run:
            address = "<source-pod-ip>"
            for manifest in (self.source_manifest(session, credential),
                             self.dest_manifest(session, credential, address)):
                path = self._export(manifest)
                print(f"[DRY-RUN] Would create pod '{manifest['metadata']['name']}' (manifest: {path})")
            return replace(session, source_address=address)

        # Pods left behind by an interrupted attempt hold stale addresses.
        self.teardown(session, missing_ok=True)

        self._create(self.source_manifest(session, credential))
        outcome = self.poller.await_phase(
            session.source_pod, PodPhase.RUNNING, self.options.source_timeout, require_ready=True,
        )
        if outcome is PhaseOutcome.TIMED_OUT:
            raise WaitTimedOutError(f"source pod '{session.source_pod}' did not become ready "
                                    f"within {self.options.source_timeout:g}s")
        if outcome is PhaseOutcome.FAILED:
            raise TransferFailedError(f"source pod '{session.source_pod}' terminated before serving SSH")

        pod = api_call(f"read pod '{session.source_pod}'", self.core_v1.read_namespaced_pod,
                       session.source_pod, self.namespace)
        address = pod.status.pod_ip
        if not address:
            raise TransferFailedError(f"source pod '{session.source_pod}' has no IP address")
        print(f"[=] Source pod '{session.source_pod}' serving SSH on {address}:{self.request.ssh_port}")

        session = replace(session, source_address=address, source_uid=pod.metadata.uid)
        self._create(self.dest_manifest(session, credential, address))
        return session

    def verify_source(self, session):
        """Fail the copy if the source pod was replaced while the destination ran."""
        if self.dry_run:
            return
        try:
            pod = api_call(f"read pod '{session.source_pod}'", self.core_v1.read_namespaced_pod,
                           session.source_pod, self.namespace)
        except ClusterNotFoundError as e:
            raise TransferFailedError(f"source pod '{session.source_pod}' disappeared during the copy") from e
        if pod.metadata.uid != session.source_uid or pod.status.pod_ip != session.source_address:
            raise TransferFailedError(
                f"source pod '{session.source_pod}' was recreated during the copy "
                f"({session.source_address} -> {pod.status.pod_ip}); the round must be restarted"
            )

    def print_logs(self, pod_name):
        if self.dry_run:
            return
        try:
            logs = self.core_v1.read_namespaced_pod_log(pod_name, self.namespace)
        except ApiException as e:
            print(f"[!] Could not fetch logs of pod '{pod_name}': {e.status} {e.reason}")
            return
        print(f"----- logs: {pod_name} -----")
        print(logs.rstrip("\n") if logs else "(empty)")
        print(f"----- end of logs: {pod_name} -----")

    def teardown(self, session, missing_ok=False, wait=True):
        """Delete the destination pod, then the source pod, and wait until both are gone."""
        for pod_name in session.pods:
            if self.dry_run:
                print(f"[DRY-RUN] Would delete pod '{pod_name}'")
                continue
            try:
                api_call(f"delete pod '{pod_name}'", self.core_v1.delete_namespaced_pod,
                         pod_name, self.namespace)
                print(f"[x] Deleted pod '{pod_name}'")
            except ClusterNotFoundError:
                if not missing_ok:
                    raise
        if self.dry_run or not wait:
            return
        for pod_name in session.pods:
            self.poller.await_gone(pod_name, self.options.release_timeout)
