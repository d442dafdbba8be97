"""One-time SSH credential for a migration run, delivered to the transfer pods as a Secret."""

import secrets
import string

from kubernetes import client

from pvc_errors import ClusterConflictError, ClusterNotFoundError, api_call
from pvc_types import MANAGED_BY_LABEL, MANAGED_BY_VALUE, Credential

ALPHABET = string.ascii_letters + string.digits
PASSWORD_KEY = "password"
CREDENTIAL_MOUNT = "/etc/pvc-migrate"
PASSWORD_FILE = f"{CREDENTIAL_MOUNT}/{PASSWORD_KEY}"


def generate_credential(username="root", length=24):
    secret = "".join(secrets.choice(ALPHABET) for _ in range(length))
    return Credential(username=username, secret=secret)


class CredentialProvider:
    """Publishes the run's credential as a Secret that both transfer pods mount read-only."""

    def __init__(self, core_v1, namespace, secret_name, dry_run=False):
        self.core_v1 = core_v1
        self.namespace = namespace
        self.secret_name = secret_name
        self.dry_run = dry_run

    def publish(self, credential):
        if self.dry_run:
            print(f"[DRY-RUN] Would store transfer credential in Secret '{self.secret_name}'")
            return
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=self.secret_name,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            ),
            type="Opaque",
            string_data={PASSWORD_KEY: credential.secret},
        )
        try:
            api_call(
                f"create Secret '{self.secret_name}'",
                self.core_v1.create_namespaced_secret,
                self.namespace,
                body,
            )
            print(f"[+] Stored transfer credential in Secret '{self.secret_name}'")
        except ClusterConflictError:
            # Left over from an interrupted run: overwrite with this run's credential.
            api_call(
                f"replace Secret '{self.secret_name}'",
                self.core_v1.replace_namespaced_secret,
                self.secret_name,
                self.namespace,
                body,
            )
            print(f"[~] Replaced stale transfer credential in Secret '{self.secret_name}'")

    def revoke(self):
        if self.dry_run:
            print(f"[DRY-RUN] Would delete Secret '{self.secret_name}'")
            return
        try:
            api_call(
                f"delete Secret '{self.secret_name}'",
                self.core_v1.delete_namespaced_secret,
                self.secret_name,
                self.namespace,
            )
            print(f"[x] Deleted transfer credential Secret '{self.secret_name}'")
        except ClusterNotFoundError:
            pass
