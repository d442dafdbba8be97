"""Checkpoint file that lets an interrupted migration resume where it stopped."""

import datetime
import json
import os

from pvc_errors import ConfigurationError
from pvc_types import MigrationState, WorkloadReference


class MigrationStateStore:
    """JSON record of the request, the discovered workload and the last completed state.

    The transfer credential is never written here.
    """

    def __init__(self, path, dry_run=False):
        self.path = path
        self.dry_run = dry_run
        self.data = None

    def load(self, request):
        """Load a checkpoint for `request`. Returns False when there is none."""
        if not os.path.exists(self.path):
            return False
        with open(self.path) as f:
            data = json.load(f)

        saved = data.get("request", {})
        if (saved.get("source_claim"), saved.get("namespace")) != (request.source_claim, request.namespace):
            raise ConfigurationError(
                f"State file '{self.path}' belongs to the migration of PVC "
                f"'{saved.get('namespace')}/{saved.get('source_claim')}'. Use --state-file to pick another."
            )
        if saved != request.to_dict():
            raise ConfigurationError(
                f"State file '{self.path}' was written for different options ({saved}). "
                "Resume with the same flags, or finish that migration first."
            )
        self.data = data
        return True

    def start(self, request, holder):
        self.data = {
            "request": request.to_dict(),
            "holder": holder,
            "completed": None,
            "workload": None,
        }
        self._save()

    @property
    def holder(self):
        return self.data["holder"]

    @property
    def completed(self):
        value = self.data.get("completed")
        return MigrationState(value) if value else None

    @property
    def workload(self):
        value = self.data.get("workload")
        return WorkloadReference.from_dict(value) if value is not None else None

    def set_workload(self, ref):
        self.data["workload"] = ref.to_dict()
        self._save()

    def record(self, state):
        self.data["completed"] = state.value
        self._save()

    def clear(self):
        if not self.dry_run and os.path.exists(self.path):
            os.remove(self.path)
            print(f"[~] Removed state file '{self.path}'")

    def _save(self):
        if self.dry_run:
            return
        self.data["updated_at"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(self.data, f, indent=2)
        os.replace(tmp_path, self.path)
