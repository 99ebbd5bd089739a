from datetime import datetime, timedelta, timezone

from chatbot import InMemoryPendingSelectionStore, OwnerChoice, PendingSelectionState
from schemas import ExtractedTransaction
from scheduler import SchedulerManager


def test_sweep_drops_expired_pending_selections() -> None:
    store = InMemoryPendingSelectionStore()
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    store.put(
        PendingSelectionState(
            phone_number="5511988887777",
            user_id=1,
            extraction=ExtractedTransaction(
                amount_cents=100, type="expense", description="Café"
            ),
            options=[OwnerChoice("account", 1, "Conta")],
            expires_at=past,
        )
    )

    manager = SchedulerManager(store)
    assert manager._sweep() == 1
    assert manager._sweep() == 0
    assert not manager.scheduler.running
