import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level singletons read these at import time.
os.environ.setdefault("SEVA_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="seva-tests-"), "seva.sqlite3"))
os.environ.setdefault("SYNC_REFETCH_DELAYS_MS", "10,20,30")
os.environ.setdefault("ADMIN_USER_IDS", "admin_1")
os.environ.pop("FIREBASE_CREDENTIALS_PATH", None)

from app.services.approval_coordinator import ApprovalWorkflowCoordinator  # noqa: E402
from app.services.booking_manager import BookingLifecycleManager  # noqa: E402
from app.services.location_tracker import LocationTracker  # noqa: E402
from app.services.notification_store import NotificationStore  # noqa: E402
from app.services.push_sender import PushSender  # noqa: E402
from app.services.seva_store import SevaStore  # noqa: E402
from app.services.synchronizer import ConsistencySynchronizer, ConvergencePolicy  # noqa: E402
from app.services.view_cache import QueryCache  # noqa: E402


@pytest.fixture
def store(tmp_path):
    return SevaStore(db_path=str(tmp_path / "seva.sqlite3"))


@pytest.fixture
def cache():
    return QueryCache()


@pytest.fixture
def sync(cache):
    return ConsistencySynchronizer(cache, ConvergencePolicy(delays=(0.01, 0.02, 0.03)))


@pytest.fixture
def notifications():
    return NotificationStore(sender=PushSender())


@pytest.fixture
def coordinator(store, sync, notifications):
    return ApprovalWorkflowCoordinator(store, sync, notifications)


@pytest.fixture
def manager(store, sync, notifications):
    return BookingLifecycleManager(store, sync, notifications)


@pytest.fixture
def tracker(store, cache):
    return LocationTracker(store, cache)


@pytest.fixture
def make_provider(store, coordinator):
    """Returns an async factory that takes a user through apply and approval."""

    async def _make(user_id: str = "priest_1"):
        store.ensure_account(user_id, first_name="Ravi", last_name="Sharma")
        await coordinator.apply(user_id)
        outcome = await coordinator.decide(user_id, "approved")
        return store.get_provider_profile(outcome.provider_profile_id)

    return _make
