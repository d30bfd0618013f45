import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.services.errors import ConflictError, InvalidTransitionError, NotFoundError, PermissionDeniedError


@pytest.mark.asyncio
async def test_apply_moves_account_to_pending(coordinator, store, sync):
    store.ensure_account("priest_a")
    account = await coordinator.apply("priest_a")
    assert account.provider_status == "pending"
    assert account.is_provider is False

    with pytest.raises(InvalidTransitionError):
        await coordinator.apply("priest_a")
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_decide_unknown_user(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.decide("nobody", "approved")
    with pytest.raises(InvalidTransitionError):
        await coordinator.decide("nobody", "maybe")


@pytest.mark.asyncio
async def test_approve_creates_listed_provider_profile(coordinator, store, notifications, sync):
    store.ensure_account("priest_b", first_name="Meena", last_name="Iyer")
    await coordinator.apply("priest_b")

    outcome = await coordinator.decide("priest_b", "approved")

    assert outcome.success is True
    assert outcome.is_provider is True
    assert outcome.warnings == []
    profile = store.get_provider_profile_for_user("priest_b")
    assert profile.id == outcome.provider_profile_id
    assert profile.name == "Meena Iyer"
    assert profile.approval_status == "approved"
    assert [p.user_id for p in coordinator.listed_providers_view()] == ["priest_b"]
    assert notifications.list_for_user("priest_b")[0].category == "application"
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_double_approve_is_idempotent(coordinator, store, sync):
    store.ensure_account("priest_c")
    await coordinator.apply("priest_c")

    first = await coordinator.decide("priest_c", "approved")
    second = await coordinator.decide("priest_c", "approved")

    assert first.provider_profile_id == second.provider_profile_id
    assert len(store.list_provider_profiles(listed_only=False)) == 1
    assert store.get_account("priest_c").provider_status == "approved"
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_rejected_application_cannot_be_approved(coordinator, store, sync):
    store.ensure_account("priest_d")
    await coordinator.apply("priest_d")

    outcome = await coordinator.decide("priest_d", "rejected")
    assert outcome.is_provider is False
    assert outcome.provider_profile_id is None

    with pytest.raises(InvalidTransitionError):
        await coordinator.decide("priest_d", "approved")
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_revoke_keeps_profile_but_removes_access(coordinator, store, make_provider, sync):
    profile = await make_provider("priest_e")

    outcome = await coordinator.revoke("priest_e")

    account = store.get_account("priest_e")
    assert account.is_provider is False
    assert account.provider_status is None
    assert outcome.provider_profile_id == profile.id
    assert store.get_provider_profile_for_user("priest_e") is not None
    assert coordinator.listed_providers_view() == []

    await coordinator.apply("priest_e")
    reapproved = await coordinator.decide("priest_e", "approved")
    assert reapproved.provider_profile_id == profile.id
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_profile_failure_is_reported_not_raised(coordinator, store, sync, monkeypatch, caplog):
    store.ensure_account("priest_f")
    await coordinator.apply("priest_f")

    def broken_create(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "create_provider_profile", broken_create)

    with caplog.at_level(logging.WARNING):
        outcome = await coordinator.decide("priest_f", "approved")
        await sync.wait_idle()

    assert outcome.success is True
    assert outcome.is_provider is True
    assert outcome.provider_profile_id is None
    assert outcome.warnings == ["provider profile sync for priest_f incomplete: disk full"]
    assert store.get_account("priest_f").is_provider is True
    assert "provider profile missing after approval" in caplog.text


@pytest.mark.asyncio
async def test_operations_on_same_account_are_refused_while_in_flight(coordinator, store, sync):
    store.ensure_account("priest_g")
    store.ensure_account("priest_h")

    with coordinator.in_flight.claim(("account", "priest_g")):
        with pytest.raises(ConflictError):
            await coordinator.apply("priest_g")
        account = await coordinator.apply("priest_h")
        assert account.provider_status == "pending"

    assert store.get_account("priest_g").provider_status is None
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_set_admin_and_account_views(coordinator, store, sync):
    store.ensure_account("temple_staff")
    assert coordinator.account_view("temple_staff").is_admin is False

    await coordinator.set_admin("temple_staff", True)

    assert coordinator.account_view("temple_staff").is_admin is True
    admins = {a.id for a in coordinator.accounts_view() if a.is_admin}
    assert admins == {"admin_1", "temple_staff"}
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_update_own_provider_profile(coordinator, store, make_provider, sync):
    store.ensure_account("visitor")
    with pytest.raises(PermissionDeniedError):
        await coordinator.update_own_provider_profile("visitor", description="Hello")

    await make_provider("priest_i")
    updated = await coordinator.update_own_provider_profile(
        "priest_i",
        name="  ",
        description="Vedic rituals",
        specialties=["Havan", "havan", "Puja"],
        base_price=None,
    )
    assert updated.name == "Ravi Sharma"
    assert updated.description == "Vedic rituals"
    assert updated.specialties == ["Havan", "Puja"]
    assert updated.base_price == 100
    assert coordinator.provider_profile_view("priest_i").description == "Vedic rituals"
    await sync.wait_idle()


@pytest.mark.asyncio
async def test_claim_covers_profile_side_effects(coordinator, store, sync, monkeypatch):
    store.ensure_account("priest_j")
    await coordinator.apply("priest_j")
    observed = []
    ensure = coordinator.ensure_provider_profile

    def watching_ensure(account):
        observed.append(coordinator.in_flight.is_busy(("account", "priest_j")))
        return ensure(account)

    monkeypatch.setattr(coordinator, "ensure_provider_profile", watching_ensure)

    await coordinator.decide("priest_j", "approved")

    assert observed == [True]
    assert not coordinator.in_flight.is_busy(("account", "priest_j"))
    await sync.wait_idle()
