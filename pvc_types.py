"""Value types shared by the PVC migration components."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pvc_errors import ConfigurationError

GIB = 2 ** 30
MOUNT_PATH = "/mnt/data"
DEFAULT_BWLIMIT = 10240
DEFAULT_SSH_PORT = 19022
DEFAULT_IMAGE = "alpine:latest"
TEMP_SUFFIX = "-tmp"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "pvc-migrate"


class WorkloadKind(Enum):
    DEPLOYMENT = "Deployment"
    STATEFULSET = "StatefulSet"
    REPLICASET = "ReplicaSet"
    DAEMONSET = "DaemonSet"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, kind):
        for member in cls:
            if member.value == kind:
                return member
        return cls.UNKNOWN


class Direction(Enum):
    FORWARD = "fwd"
    BACK = "back"


class Role(Enum):
    SOURCE = "src"
    DESTINATION = "dst"


class PodPhase(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class PhaseOutcome(Enum):
    """Result of waiting for a pod phase."""

    REACHED = "reached"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class DaemonSetMode(Enum):
    DELETE = "delete"
    PAUSE = "pause"


class MigrationState(Enum):
    """Migration states, in execution order"""

    DISCOVER = "discover"
    QUIESCE = "quiesce"
    PROVISION_TEMP = "provision_temp"
    COPY_FORWARD = "copy_forward"
    AWAIT_FORWARD = "await_forward"
    CLEANUP_FORWARD = "cleanup_forward"
    RECREATE_ORIGINAL = "recreate_original"
    COPY_BACK = "copy_back"
    AWAIT_BACK = "await_back"
    CLEANUP_BACK = "cleanup_back"
    RESUME = "resume"
    DONE = "done"

    @property
    def index(self):
        return list(MigrationState).index(self)


@dataclass(frozen=True)
class MigrationRequest:
    """What to migrate. Built once from the command line and never mutated."""

    source_claim: str
    namespace: str
    size_gib: int
    storage_class: str
    bandwidth_limit: int = DEFAULT_BWLIMIT
    ssh_port: int = DEFAULT_SSH_PORT

    def __post_init__(self):
        if not self.source_claim:
            raise ConfigurationError("source claim name is required")
        if not self.namespace:
            raise ConfigurationError("namespace is required")
        if not self.storage_class:
            raise ConfigurationError("storage class is required")
        if not isinstance(self.size_gib, int) or self.size_gib <= 0:
            raise ConfigurationError(f"size must be a positive number of GiB, got {self.size_gib!r}")
        if self.bandwidth_limit < 0:
            raise ConfigurationError(f"bandwidth limit must be >= 0 KB/s, got {self.bandwidth_limit}")
        if not 0 < self.ssh_port < 65536:
            raise ConfigurationError(f"ssh port must be between 1 and 65535, got {self.ssh_port}")

    @property
    def temp_claim(self):
        return f"{self.source_claim}{TEMP_SUFFIX}"

    @property
    def size_bytes(self):
        return self.size_gib * GIB

    def to_dict(self):
        return {
            "source_claim": self.source_claim,
            "namespace": self.namespace,
            "size_gib": self.size_gib,
            "storage_class": self.storage_class,
            "bandwidth_limit": self.bandwidth_limit,
            "ssh_port": self.ssh_port,
        }


@dataclass(frozen=True)
class MigrationOptions:
    """How to migrate: timings, image and operating mode."""

    image: str = DEFAULT_IMAGE
    grace_period: float = 20
    poll_interval: float = 5
    source_timeout: float = 600
    copy_timeout: float = 86400
    release_timeout: float = 300
    retries: int = 3
    retry_backoff: float = 2
    daemonset_mode: DaemonSetMode = DaemonSetMode.DELETE
    dry_run: bool = False
    manifest_dir: str = "manifests"
    state_file: str = "pvc_migrate_state.json"


@dataclass(frozen=True)
class WorkloadReference:
    kind: WorkloadKind = WorkloadKind.UNKNOWN
    name: str = ""
    namespace: str = ""
    replicas: Optional[int] = None

    @property
    def empty(self):
        return not self.name

    def __str__(self):
        if self.empty:
            return "<none>"
        return f"{self.kind.value}/{self.name}"

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "name": self.name,
            "namespace": self.namespace,
            "replicas": self.replicas,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            kind=WorkloadKind.parse(data.get("kind")),
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            replicas=data.get("replicas"),
        )


@dataclass(frozen=True)
class Credential:
    username: str
    secret: str = field(repr=False)

    def __repr__(self):
        return f"Credential(username={self.username!r}, secret='***')"

    __str__ = __repr__


@dataclass(frozen=True)
class Claim:
    name: str
    namespace: str
    size_gib: int
    storage_class: str
    access_mode: str = "ReadWriteOnce"

    @property
    def size_bytes(self):
        return self.size_gib * GIB


@dataclass(frozen=True)
class TransferSession:
    """One source/destination pod pair copying a single direction."""

    direction: Direction
    source_claim: str
    dest_claim: str
    source_pod: str
    dest_pod: str
    source_address: Optional[str] = None
    source_uid: Optional[str] = None

    @property
    def pods(self):
        return (self.dest_pod, self.source_pod)
