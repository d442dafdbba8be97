"""Pytest configuration and shared fixtures for the PVC migrator."""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from pvc_orchestrator import PVCMigrator
from pvc_types import Credential, MigrationOptions, MigrationRequest
from tests.fake_cluster import FakeCluster

TEST_SECRET = "s3cret-test"


@pytest.fixture(name="cluster")
def fixture_cluster():
    """An empty in-memory cluster in namespace 'default'."""
    return FakeCluster()


@pytest.fixture(name="fast_options")
def fixture_fast_options(tmp_path):
    """Options with near-zero waits and files kept under tmp_path."""
    return MigrationOptions(
        grace_period=0,
        poll_interval=0.01,
        source_timeout=2,
        copy_timeout=2,
        release_timeout=2,
        retries=2,
        retry_backoff=0,
        state_file=str(tmp_path / "state.json"),
        manifest_dir=str(tmp_path / "manifests"),
    )


@pytest.fixture(name="request_data0")
def fixture_request_data0():
    return MigrationRequest(
        source_claim="data0",
        namespace="default",
        size_gib=20,
        storage_class="fast",
        bandwidth_limit=5000,
        ssh_port=2222,
    )


@pytest.fixture(name="make_migrator")
def fixture_make_migrator(cluster):
    """Build a PVCMigrator wired to the fake cluster."""

    def build(request, options, cancel=None, watch_factory=None):
        return PVCMigrator(
            request,
            options,
            cluster.core,
            cluster.apps,
            cluster.coordination,
            cancel=cancel,
            watch_factory=watch_factory or cluster.watch_factory,
            credential_factory=lambda: Credential("root", TEST_SECRET),
        )

    return build
