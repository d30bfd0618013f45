import logging
from typing import Any, List, Optional

from app.models import AccountProfile, ApprovalOutcome, NotificationPayload, ProviderProfile
from app.services.errors import ConflictError, InvalidTransitionError, NotFoundError, PartialFailure, PermissionDeniedError
from app.services.in_flight import InFlightRegistry
from app.services.notification_store import NotificationStore, notification_store
from app.services.seva_store import SevaStore, seva_store
from app.services.synchronizer import ConsistencySynchronizer, synchronizer

logger = logging.getLogger(__name__)

DECISIONS = {"approved", "rejected"}
DECIDABLE_FROM = {None, "pending"}


def _account_scopes(user_id: str) -> List[tuple]:
    return [("profiles",), ("profile", user_id), ("provider_profile", user_id), ("providers",)]


class ApprovalWorkflowCoordinator:
    """Provider application workflow: apply, decide, revoke.

    The account's is_provider flag is the authoritative access gate. Provider
    profile writes are side effects: when they fail after the account write the
    decision still stands and the failure is reported as a PartialFailure warning.
    """

    def __init__(
        self,
        store: SevaStore,
        sync: ConsistencySynchronizer,
        notifications: NotificationStore,
        in_flight: Optional[InFlightRegistry] = None,
    ) -> None:
        self.store = store
        self.sync = sync
        self.notifications = notifications
        self.in_flight = in_flight or InFlightRegistry()

    def _require_account(self, user_id: str) -> AccountProfile:
        account = self.store.get_account(user_id)
        if not account:
            raise NotFoundError("User not found")
        return account

    async def apply(self, user_id: str) -> AccountProfile:
        with self.in_flight.claim(("account", user_id)):
            account = self._require_account(user_id)
            if account.provider_status is not None:
                raise InvalidTransitionError(f"Application already {account.provider_status}")
            updated = self.store.update_account(user_id, provider_status="pending")
            logger.info("Provider application submitted by %s", user_id)
            await self.sync.converge(
                label=f"apply:{user_id}",
                scopes=_account_scopes(user_id),
                verify=lambda: self._verify_account(user_id, provider_status="pending", is_provider=False),
            )
        return updated

    async def decide(self, user_id: str, decision: str) -> ApprovalOutcome:
        if decision not in DECISIONS:
            raise InvalidTransitionError(f"Unknown decision: {decision}")
        with self.in_flight.claim(("account", user_id)):
            account = self._require_account(user_id)
            current = account.provider_status
            if current != decision and current not in DECIDABLE_FROM:
                raise InvalidTransitionError(f"Application already {current}")

            approved = decision == "approved"
            account = self.store.update_account(user_id, provider_status=decision, is_provider=approved)
            logger.info("Provider application for %s %s (was %s)", user_id, decision, current or "none")

            failures: List[PartialFailure] = []
            profile: Optional[ProviderProfile] = None
            try:
                if approved:
                    profile = self.ensure_provider_profile(account)
                else:
                    profile = self._mirror_profile_status(user_id, decision)
            except Exception as exc:
                failures.append(PartialFailure(operation="provider profile sync", entity_id=user_id, detail=str(exc)))
            for failure in failures:
                logger.warning("Partial failure: %s", failure)

            self.notifications.dispatch(
                NotificationPayload(
                    type="provider_application_status",
                    recipient=user_id,
                    data={"status": decision},
                )
            )
            await self.sync.converge(
                label=f"decide:{user_id}:{decision}",
                scopes=_account_scopes(user_id),
                verify=lambda: self._verify_decision(user_id, decision),
            )

        return ApprovalOutcome(
            success=True,
            user_id=user_id,
            provider_status=account.provider_status,
            is_provider=account.is_provider,
            provider_profile_id=profile.id if profile else None,
            warnings=[str(failure) for failure in failures],
        )

    async def revoke(self, user_id: str) -> ApprovalOutcome:
        with self.in_flight.claim(("account", user_id)):
            self._require_account(user_id)
            account = self.store.update_account(user_id, provider_status=None, is_provider=False)
            profile = self.store.get_provider_profile_for_user(user_id)
            logger.info("Provider access revoked for %s (profile %s kept)", user_id, profile.id if profile else "none")
            await self.sync.converge(
                label=f"revoke:{user_id}",
                scopes=_account_scopes(user_id),
                verify=lambda: self._verify_account(user_id, provider_status=None, is_provider=False),
            )
        return ApprovalOutcome(
            success=True,
            user_id=user_id,
            provider_status=account.provider_status,
            is_provider=account.is_provider,
            provider_profile_id=profile.id if profile else None,
        )

    async def set_admin(self, user_id: str, is_admin: bool) -> AccountProfile:
        with self.in_flight.claim(("account", user_id)):
            self._require_account(user_id)
            updated = self.store.update_account(user_id, is_admin=is_admin)
            logger.info("Admin flag for %s set to %s", user_id, is_admin)
            await self.sync.converge(label=f"admin:{user_id}", scopes=[("profiles",), ("profile", user_id)])
        return updated

    async def update_own_provider_profile(self, user_id: str, **fields: Any) -> ProviderProfile:
        account = self._require_account(user_id)
        if not account.is_provider:
            raise PermissionDeniedError("Only approved priests can edit a provider profile")
        changes = {key: value for key, value in fields.items() if value is not None}
        if "name" in changes and not str(changes["name"]).strip():
            changes.pop("name")
        profile = self.store.update_provider_profile_for_user(user_id, **changes)
        await self.sync.converge(
            label=f"provider_profile:{user_id}",
            scopes=[("provider_profile", user_id), ("providers",)],
        )
        return profile

    def ensure_provider_profile(self, account: AccountProfile) -> ProviderProfile:
        """Check-then-create; an existing row is flipped to approved instead of duplicated."""
        existing = self.store.get_provider_profile_for_user(account.id)
        if existing:
            if existing.approval_status == "approved":
                return existing
            return self.store.update_provider_profile_for_user(account.id, approval_status="approved")

        name = f"{account.first_name or ''} {account.last_name or ''}".strip() or "New Priest"
        try:
            profile = self.store.create_provider_profile(
                account.id,
                name=name,
                avatar_url=account.avatar_url,
                approval_status="approved",
            )
        except ConflictError:
            # Lost a create race; the row exists now.
            return self.store.update_provider_profile_for_user(account.id, approval_status="approved")
        logger.info("Provider profile %s created for %s", profile.id, account.id)
        return profile

    def _mirror_profile_status(self, user_id: str, status: str) -> Optional[ProviderProfile]:
        existing = self.store.get_provider_profile_for_user(user_id)
        if not existing:
            return None
        if existing.approval_status == status:
            return existing
        return self.store.update_provider_profile_for_user(user_id, approval_status=status)

    def _verify_account(self, user_id: str, provider_status: Optional[str], is_provider: bool) -> List[str]:
        account = self.store.get_account(user_id)
        if account is None:
            return [f"account {user_id} missing"]
        mismatches: List[str] = []
        if account.provider_status != provider_status:
            mismatches.append(f"provider_status is {account.provider_status}, expected {provider_status}")
        if account.is_provider != is_provider:
            mismatches.append(f"is_provider is {account.is_provider}, expected {is_provider}")
        return mismatches

    def _verify_decision(self, user_id: str, decision: str) -> List[str]:
        mismatches = self._verify_account(user_id, provider_status=decision, is_provider=decision == "approved")
        profile = self.store.get_provider_profile_for_user(user_id)
        if decision == "approved" and profile is None:
            mismatches.append("provider profile missing after approval")
        if profile is not None and profile.approval_status != decision:
            mismatches.append(f"provider profile approval_status is {profile.approval_status}, expected {decision}")
        return mismatches

    # Read-side views

    def accounts_view(self) -> List[AccountProfile]:
        return self.sync.cache.read(("profiles", "admin"), self.store.list_accounts)

    def account_view(self, user_id: str) -> AccountProfile:
        return self.sync.cache.read(("profile", user_id), lambda: self._require_account(user_id))

    def provider_profile_view(self, user_id: str) -> Optional[ProviderProfile]:
        return self.sync.cache.read(
            ("provider_profile", user_id), lambda: self.store.get_provider_profile_for_user(user_id)
        )

    def listed_providers_view(self) -> List[ProviderProfile]:
        return self.sync.cache.read(("providers", "listed"), self.store.list_provider_profiles)


approval_coordinator = ApprovalWorkflowCoordinator(seva_store, synchronizer, notification_store)
