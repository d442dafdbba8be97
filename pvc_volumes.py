from kubernetes import client

from pvc_errors import ClaimExistsError, ClaimNotFoundError, TransientClusterError, api_call


class VolumeProvisioner:
    """Creates and deletes PVCs. Neither call waits for the claim to bind."""

    def __init__(self, core_v1, namespace, dry_run=False):
        self.core_v1 = core_v1
        self.namespace = namespace
        self.dry_run = dry_run

    def create(self, claim, exist_ok=False):
        """Create `claim` (a pvc_types.Claim).

        A name clash is fatal unless `exist_ok`, and even then the existing
        claim must carry the requested storage class and size. A clash with a
        claim that is still terminating is transient.
        """
        size = f"{claim.size_gib}Gi"
        if self.dry_run:
            print(f"[DRY-RUN] Would create PVC '{claim.name}' in SC '{claim.storage_class}' ({size})")
            return
        action = f"create PVC '{claim.name}'"
        body = client.V1PersistentVolumeClaim(
            metadata=client.V1ObjectMeta(name=claim.name, namespace=self.namespace),
            spec=client.V1PersistentVolumeClaimSpec(
                storage_class_name=claim.storage_class,
                access_modes=[claim.access_mode],
                resources=client.V1VolumeResourceRequirements(requests={"storage": size}),
            ),
        )
        try:
            api_call(
                action,
                self.core_v1.create_namespaced_persistent_volume_claim,
                self.namespace,
                body,
                _conflict=ClaimExistsError,
            )
        except ClaimExistsError as e:
            existing = self.read(claim.name)
            if existing is None or existing.metadata.deletion_timestamp:
                raise TransientClusterError(action, 409, "previous claim is still being deleted") from e
            if not exist_ok:
                raise
            found_class = existing.spec.storage_class_name
            found_size = ((existing.spec.resources.requests if existing.spec.resources else None) or {}).get("storage")
            if (found_class, found_size) != (claim.storage_class, size):
                raise ClaimExistsError(
                    action, 409,
                    f"existing claim is SC '{found_class}' ({found_size}), expected SC '{claim.storage_class}' ({size})",
                ) from e
            print(f"[~] PVC '{claim.name}' already exists from an earlier attempt. Keeping it.")
            return
        print(f"[+] Created PVC '{claim.name}' in SC '{claim.storage_class}' ({size})")

    def delete(self, name, missing_ok=False):
        if self.dry_run:
            print(f"[DRY-RUN] Would delete PVC '{name}'")
            return
        try:
            api_call(
                f"delete PVC '{name}'",
                self.core_v1.delete_namespaced_persistent_volume_claim,
                name,
                self.namespace,
                _not_found=ClaimNotFoundError,
            )
        except ClaimNotFoundError:
            if not missing_ok:
                raise
            print(f"[~] PVC '{name}' was already deleted.")
            return
        print(f"[x] Deleted PVC '{name}'")

    def read(self, name):
        """Return the claim object, or None when it does not exist."""
        try:
            return api_call(
                f"read PVC '{name}'",
                self.core_v1.read_namespaced_persistent_volume_claim,
                name,
                self.namespace,
                _not_found=ClaimNotFoundError,
            )
        except ClaimNotFoundError:
            return None

    def exists(self, name):
        return self.read(name) is not None
