import os
import tempfile
from pathlib import Path

# Must run before kvm_fleet.db builds its engine.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="kvm-fleet-tests-"))
os.environ["KVM_FLEET_DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'state.db'}"
os.environ["KVM_FLEET_TRANSIENT_DIR"] = str(_TEST_ROOT / "transient")
os.environ["KVM_FLEET_SSH_INITIAL_DELAY_SEC"] = "0"
os.environ["KVM_FLEET_RETRY_SLEEP_SEC"] = "0"

from kvm_fleet.config import get_settings  # noqa: E402

get_settings.cache_clear()
