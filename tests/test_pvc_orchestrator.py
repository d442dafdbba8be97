"""End-to-end migrations against the in-memory cluster."""

import json
import os
from dataclasses import replace
from threading import Event

import pytest
from urllib3.exceptions import ProtocolError

from pvc_errors import (
    ClaimExistsError,
    ClusterAuthorizationError,
    MigrationAbortedError,
    MigrationCancelledError,
    MigrationLockedError,
    MultipleOwnersError,
    TransferFailedError,
    TransientClusterError,
    WaitTimedOutError,
)
from pvc_lock import ClaimLock
from pvc_orchestrator import StepOutcome, attempt
from pvc_state import MigrationStateStore
from pvc_types import MigrationState, WorkloadKind, WorkloadReference
from tests.fake_cluster import api_error

DATA = {"index.html": "<h1>hello</h1>", "db/records.bin": "0101"}

CHUNK_ERROR = "Connection broken: InvalidChunkLength(got length b'', 0 bytes read)"

LEASE = "pvcm-lock-data0"
SECRET = "pvcm-auth-data0"

FORWARD_ROUND = [
    ("create_secret", SECRET),
    ("create_pod", "pvcm-fwd-src-data0", "data0"),
    ("create_pod", "pvcm-fwd-dst-data0-tmp", "data0-tmp"),
    ("copy", "data0", "data0-tmp"),
    ("delete_pod", "pvcm-fwd-dst-data0-tmp"),
    ("delete_pod", "pvcm-fwd-src-data0"),
    ("delete_claim", "data0"),
]

BACK_ROUND = [
    ("create_pod", "pvcm-back-src-data0-tmp", "data0-tmp"),
    ("create_pod", "pvcm-back-dst-data0", "data0"),
    ("copy", "data0-tmp", "data0"),
    ("delete_pod", "pvcm-back-dst-data0"),
    ("delete_pod", "pvcm-back-src-data0-tmp"),
    ("delete_claim", "data0-tmp"),
]


@pytest.fixture(name="app_cluster")
def fixture_app_cluster(cluster):
    """data0 (10Gi, 'slow') mounted by Deployment app0 with 3 replicas."""
    cluster.add_claim("data0", storage_class="slow", size="10Gi", data=DATA)
    cluster.add_deployment("app0", "data0", replicas=3)
    return cluster


def read_state(path):
    with open(path) as f:
        return json.load(f)


class TestSuccessfulMigration:
    def test_event_sequence(self, app_cluster, request_data0, fast_options, make_migrator):
        """Quiesce, copy out, swap, copy back and resume, in that order."""
        make_migrator(request_data0, fast_options).run()

        assert app_cluster.events == [
            ("create_lease", LEASE),
            ("scale", "Deployment", "app0", 0),
            ("create_claim", "data0-tmp", "20Gi", "fast"),
            *FORWARD_ROUND,
            ("create_claim", "data0", "20Gi", "fast"),
            *BACK_ROUND,
            ("scale", "Deployment", "app0", 3),
            ("delete_secret", SECRET),
            ("delete_lease", LEASE),
        ]

    def test_transfer_pods_use_requested_bandwidth_and_port(self, app_cluster, request_data0, fast_options,
                                                            make_migrator):
        make_migrator(request_data0, fast_options).run()

        dest_script = app_cluster.manifests["pvcm-fwd-dst-data0-tmp"]["spec"]["containers"][0]["args"][0]
        source_script = app_cluster.manifests["pvcm-fwd-src-data0"]["spec"]["containers"][0]["args"][0]
        assert "--bwlimit=5000" in dest_script
        assert "ssh -p 2222" in dest_script
        assert "sshd -D -e -p 2222" in source_script

    def test_claim_recreated_with_new_size_class_and_content(self, app_cluster, request_data0, fast_options,
                                                             make_migrator):
        make_migrator(request_data0, fast_options).run()

        assert app_cluster.claim_names() == ["data0"]
        claim = app_cluster.claims["data0"]
        assert claim["size"] == "20Gi"
        assert claim["storage_class"] == "fast"
        assert claim["data"] == DATA
        assert app_cluster.replicas("Deployment", "app0") == 3

    def test_original_deleted_only_after_forward_copy(self, app_cluster, request_data0, fast_options,
                                                      make_migrator):
        make_migrator(request_data0, fast_options).run()

        events = app_cluster.events
        assert events.index(("copy", "data0", "data0-tmp")) < events.index(("delete_claim", "data0"))
        assert events.index(("copy", "data0-tmp", "data0")) < events.index(("delete_claim", "data0-tmp"))
        assert events.index(("delete_claim", "data0")) < events.index(("create_claim", "data0", "20Gi", "fast"))

    def test_no_secret_left_and_state_file_removed(self, app_cluster, request_data0, fast_options,
                                                   make_migrator):
        make_migrator(request_data0, fast_options).run()

        assert app_cluster.secrets == {}
        assert app_cluster.leases == {}
        assert not os.path.exists(fast_options.state_file)
        assert not [name for name in app_cluster.pods if name.startswith("pvcm-")]

    def test_secret_never_in_manifests(self, app_cluster, request_data0, fast_options, make_migrator):
        make_migrator(request_data0, fast_options).run()

        for manifest in app_cluster.manifests.values():
            assert "s3cret-test" not in json.dumps(manifest)

    def test_statefulset_replicas_restored(self, cluster, request_data0, fast_options, make_migrator):
        cluster.add_claim("data0", data=DATA)
        cluster.add_stateful_set("db", "data0", replicas=2)

        make_migrator(request_data0, fast_options).run()

        assert ("scale", "StatefulSet", "db", 0) in cluster.events
        assert cluster.events[-3] == ("scale", "StatefulSet", "db", 2)
        assert cluster.replicas("StatefulSet", "db") == 2

    def test_claim_without_workload(self, cluster, request_data0, fast_options, make_migrator):
        """An unmounted claim is migrated without touching any workload."""
        cluster.add_claim("data0", data=DATA)

        make_migrator(request_data0, fast_options).run()

        assert not [e for e in cluster.events if e[0] == "scale"]
        assert cluster.claims["data0"]["data"] == DATA

    def test_transient_error_retried(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.fail("create_namespaced_persistent_volume_claim", api_error(503, "Service Unavailable"))

        make_migrator(request_data0, fast_options).run()

        assert app_cluster.events.count(("create_claim", "data0-tmp", "20Gi", "fast")) == 1
        assert app_cluster.claims["data0"]["data"] == DATA

    def test_retired_claims_are_gone_before_recreate(self, app_cluster, request_data0, fast_options, make_migrator):
        """Deleted claims stay terminating for a while; the name is reused only once they are gone."""
        app_cluster.claim_delete_lag = 3

        make_migrator(request_data0, fast_options).run()

        assert app_cluster.claim_names() == ["data0"]
        claim = app_cluster.claims["data0"]
        assert (claim["size"], claim["storage_class"], claim["data"]) == ("20Gi", "fast", DATA)
        assert app_cluster.events.count(("create_claim", "data0", "20Gi", "fast")) == 1
        assert app_cluster.replicas("Deployment", "app0") == 3

    def test_watch_dropped_during_copy_wait(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.fail("watch:pvcm-fwd-dst-data0-tmp", ProtocolError(CHUNK_ERROR))

        make_migrator(request_data0, fast_options).run()

        assert not app_cluster.failures["watch:pvcm-fwd-dst-data0-tmp"]
        assert app_cluster.events.count(("copy", "data0", "data0-tmp")) == 1
        assert app_cluster.claims["data0"]["data"] == DATA
        assert app_cluster.replicas("Deployment", "app0") == 3


class TestAbortedMigration:
    def test_failed_copy_keeps_original_and_restores_workload(self, app_cluster, request_data0, fast_options,
                                                              make_migrator):
        app_cluster.dest_outcome = "Failed"

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options).run()

        assert exc_info.value.state is MigrationState.AWAIT_FORWARD
        assert isinstance(exc_info.value.cause, TransferFailedError)
        assert app_cluster.claims["data0"]["data"] == DATA
        assert ("delete_claim", "data0") not in app_cluster.events
        assert app_cluster.replicas("Deployment", "app0") == 3
        assert app_cluster.secrets == {}
        assert not [name for name in app_cluster.pods if name.startswith("pvcm-")]

    def test_failed_copy_keeps_checkpoint_and_lease(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.dest_outcome = "Failed"

        with pytest.raises(MigrationAbortedError):
            make_migrator(request_data0, fast_options).run()

        state = read_state(fast_options.state_file)
        assert state["completed"] == MigrationState.DISCOVER.value
        assert state["workload"]["replicas"] == 3
        assert LEASE in app_cluster.leases

    def test_copy_timeout(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.dest_outcome = "Running"
        options = replace(fast_options, copy_timeout=0.2)

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, options).run()

        assert isinstance(exc_info.value.cause, WaitTimedOutError)
        assert app_cluster.claims["data0"]["data"] == DATA
        assert app_cluster.replicas("Deployment", "app0") == 3

    def test_source_recreated_during_copy(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.recreate_source_during_copy = True

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options).run()

        assert isinstance(exc_info.value.cause, TransferFailedError)
        assert "recreated" in str(exc_info.value.cause)
        assert ("delete_claim", "data0") not in app_cluster.events

    def test_unexpected_error_restores_workload(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.fail("watch:pvcm-fwd-dst-data0-tmp", RuntimeError("decoder exploded"))

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options).run()

        assert exc_info.value.state is MigrationState.AWAIT_FORWARD
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert app_cluster.claims["data0"]["data"] == DATA
        assert ("delete_claim", "data0") not in app_cluster.events
        assert app_cluster.replicas("Deployment", "app0") == 3
        assert app_cluster.secrets == {}
        assert not [name for name in app_cluster.pods if name.startswith("pvcm-")]

    def test_cancel_during_copy_wait(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.dest_outcome = "Running"
        cancel = Event()

        def cancelling_watch():
            if "pvcm-fwd-dst-data0-tmp" in app_cluster.pods:
                cancel.set()
            return app_cluster.watch_factory()

        migrator = make_migrator(request_data0, fast_options, cancel=cancel, watch_factory=cancelling_watch)
        with pytest.raises(MigrationAbortedError) as exc_info:
            migrator.run()

        assert exc_info.value.state is MigrationState.AWAIT_FORWARD
        assert isinstance(exc_info.value.cause, MigrationCancelledError)
        assert app_cluster.replicas("Deployment", "app0") == 3
        assert not [name for name in app_cluster.pods if name.startswith("pvcm-")]

    def test_cancel_before_start_leaves_nothing(self, app_cluster, request_data0, fast_options, make_migrator):
        cancel = Event()
        cancel.set()

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options, cancel=cancel).run()

        assert exc_info.value.state is MigrationState.DISCOVER
        assert app_cluster.events == [("create_lease", LEASE), ("delete_lease", LEASE)]
        assert not os.path.exists(fast_options.state_file)

    def test_authorization_error_is_not_retried(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.fail("create_namespaced_persistent_volume_claim", api_error(403, "Forbidden"), times=3)

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options).run()

        assert exc_info.value.state is MigrationState.PROVISION_TEMP
        assert isinstance(exc_info.value.cause, ClusterAuthorizationError)
        assert len(app_cluster.failures["create_namespaced_persistent_volume_claim"]) == 2
        assert app_cluster.replicas("Deployment", "app0") == 3
        # Nothing was provisioned yet, so there is nothing to resume.
        assert not os.path.exists(fast_options.state_file)
        assert app_cluster.leases == {}

    def test_transient_error_exhausts_retries(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.fail("create_namespaced_persistent_volume_claim", api_error(503, "Service Unavailable"), times=5)

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options).run()

        assert isinstance(exc_info.value.cause, TransientClusterError)
        # one attempt plus two retries
        assert len(app_cluster.failures["create_namespaced_persistent_volume_claim"]) == 2

    def test_existing_temp_claim_aborts_before_quiesce(self, app_cluster, request_data0, fast_options,
                                                       make_migrator):
        app_cluster.add_claim("data0-tmp")

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options).run()

        assert exc_info.value.state is MigrationState.DISCOVER
        assert isinstance(exc_info.value.cause, ClaimExistsError)
        assert app_cluster.events == [("create_lease", LEASE), ("delete_lease", LEASE)]
        assert app_cluster.claim_names() == ["data0", "data0-tmp"]

    def test_multiple_owners_abort(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.add_stateful_set("db", "data0")

        with pytest.raises(MigrationAbortedError) as exc_info:
            make_migrator(request_data0, fast_options).run()

        assert isinstance(exc_info.value.cause, MultipleOwnersError)
        assert not [e for e in app_cluster.events if e[0] == "scale"]

    def test_locked_by_another_migration(self, app_cluster, request_data0, fast_options, make_migrator):
        ClaimLock(app_cluster.coordination, "default", "data0", "other-host-1234").acquire()
        app_cluster.events.clear()

        with pytest.raises(MigrationLockedError, match="kubectl delete lease pvcm-lock-data0"):
            make_migrator(request_data0, fast_options).run()

        assert app_cluster.events == []
        assert app_cluster.replicas("Deployment", "app0") == 3


class TestResume:
    def test_rerun_after_failed_copy_completes(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.dest_outcome = "Failed"
        with pytest.raises(MigrationAbortedError):
            make_migrator(request_data0, fast_options).run()

        app_cluster.dest_outcome = "Succeeded"
        app_cluster.events.clear()
        make_migrator(request_data0, fast_options).run()

        # The temporary claim from the first attempt is reused.
        assert ("create_claim", "data0-tmp", "20Gi", "fast") not in app_cluster.events
        assert app_cluster.events[0] == ("scale", "Deployment", "app0", 0)
        assert app_cluster.claim_names() == ["data0"]
        assert app_cluster.claims["data0"]["data"] == DATA
        assert app_cluster.claims["data0"]["storage_class"] == "fast"
        assert app_cluster.replicas("Deployment", "app0") == 3
        assert not os.path.exists(fast_options.state_file)
        assert app_cluster.leases == {}

    def test_resume_after_forward_cleanup(self, cluster, request_data0, fast_options, make_migrator):
        """The original claim is already gone; only the copy back remains."""
        cluster.add_claim("data0-tmp", storage_class="fast", size="20Gi", data=DATA)
        cluster.add_deployment("app0", "data0", replicas=0)
        store = MigrationStateStore(fast_options.state_file)
        store.start(request_data0, "old-host-0001")
        store.set_workload(WorkloadReference(WorkloadKind.DEPLOYMENT, "app0", "default", 3))
        store.record(MigrationState.CLEANUP_FORWARD)

        make_migrator(request_data0, fast_options).run()

        assert cluster.events == [
            ("create_lease", LEASE),
            ("create_claim", "data0", "20Gi", "fast"),
            ("create_secret", SECRET),
            *BACK_ROUND,
            ("scale", "Deployment", "app0", 3),
            ("delete_secret", SECRET),
            ("delete_lease", LEASE),
        ]
        assert cluster.claims["data0"]["data"] == DATA

    def test_interrupted_copy_launch_is_restarted(self, cluster, request_data0, fast_options, make_migrator):
        cluster.add_claim("data0", data=DATA)
        cluster.add_claim("data0-tmp", storage_class="fast", size="20Gi")
        cluster.add_deployment("app0", "data0", replicas=0)
        store = MigrationStateStore(fast_options.state_file)
        store.start(request_data0, "old-host-0001")
        store.set_workload(WorkloadReference(WorkloadKind.DEPLOYMENT, "app0", "default", 1))
        store.record(MigrationState.COPY_FORWARD)

        make_migrator(request_data0, fast_options).run()

        assert ("create_pod", "pvcm-fwd-src-data0", "data0") in cluster.events
        assert ("copy", "data0", "data0-tmp") in cluster.events
        assert cluster.claims["data0"]["data"] == DATA
        assert cluster.replicas("Deployment", "app0") == 1

    def test_resume_reacquires_own_lease(self, app_cluster, request_data0, fast_options, make_migrator):
        app_cluster.dest_outcome = "Failed"
        with pytest.raises(MigrationAbortedError):
            make_migrator(request_data0, fast_options).run()
        holder = read_state(fast_options.state_file)["holder"]
        assert app_cluster.leases[LEASE].spec.holder_identity == holder

        app_cluster.dest_outcome = "Succeeded"
        make_migrator(request_data0, fast_options).run()

        assert app_cluster.leases == {}


class TestDryRun:
    def test_no_mutations(self, app_cluster, request_data0, fast_options, make_migrator):
        options = replace(fast_options, dry_run=True)

        make_migrator(request_data0, options).run()

        assert app_cluster.events == []
        assert app_cluster.claim_names() == ["data0"]
        assert app_cluster.replicas("Deployment", "app0") == 3
        assert not os.path.exists(options.state_file)

    def test_manifests_written(self, app_cluster, request_data0, fast_options, make_migrator):
        options = replace(fast_options, dry_run=True)

        make_migrator(request_data0, options).run()

        assert sorted(os.listdir(options.manifest_dir)) == [
            "pvcm-back-dst-data0.yaml",
            "pvcm-back-src-data0-tmp.yaml",
            "pvcm-fwd-dst-data0-tmp.yaml",
            "pvcm-fwd-src-data0.yaml",
        ]


class TestAttempt:
    def test_ok(self):
        assert attempt(lambda: None) == (StepOutcome.OK, None)

    def test_transient_is_retryable(self):
        error = TransientClusterError("list pods", 503, "Service Unavailable")

        def action():
            raise error

        assert attempt(action) == (StepOutcome.RETRYABLE, error)

    def test_other_errors_are_fatal(self):
        error = TransferFailedError("copy pod failed")

        def action():
            raise error

        assert attempt(action) == (StepOutcome.FATAL, error)
