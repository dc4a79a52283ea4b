"""
Occupancy Coordinator.

Keeps the membership edge between profiles and flats consistent:

    profile.flatMemberships  <->  flat.ownerId / flat.currentTenantId

Occupancy is derived, never set ad hoc:

    rented          at least one active tenant-capacity occupant lists the flat
    owner-occupied  otherwise, when the owner is active and lists the flat
    vacant          otherwise

Tenant-capacity occupants are the active profiles listing the flat other
than its owner. The profile and flat writes are not transactional, so every
operation runs as a Saga: profile first, then flat(s). When a later step
fails the earlier ones are compensated; whatever could not be rolled back is
reported in a PartialWriteError.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..core.config import Settings, settings as default_settings
from ..exceptions import (
    AccountExistsError,
    AmbiguousTargetError,
    CrossSocietyError,
    DuplicateIdentityError,
    DuplicateRecordError,
    FlatNotFoundError,
    InactiveProfileError,
    PartialWriteError,
    ProfileNotFoundError,
)
from ..monitoring.metrics import (
    occupancy_operation_duration_seconds,
    occupancy_operations_total,
    partial_writes_total,
)
from ..persistence.gateway import RecordGateway
from ..schemas import Capacity, Flat, OccupancyStatus, Profile, ProfileStatus, Role
from ..schemas.credentials import DraftProfile
from .saga import Saga, SagaError
from .session_resolver import SessionResolver

logger = logging.getLogger(__name__)

USERS = "users"
FLATS = "flats"


@dataclass
class OccupancyResult:
    """State of both sides after a successful operation."""

    profile: Profile
    flat: Flat
    released: List[Flat] = field(default_factory=list)


def derive_occupancy(
    owner_id: Optional[str],
    current_tenant_id: Optional[str],
    occupants: Iterable[Profile],
    preferred_tenant_id: Optional[str] = None,
) -> Tuple[str, Optional[str]]:
    """
    Derive a flat's occupancy from the profiles that list it.

    Args:
        owner_id: The flat's owner after the change
        current_tenant_id: The flat's tenant reference before the change
        occupants: Profiles listing the flat after the change
        preferred_tenant_id: Tenant to reference when several qualify

    Returns:
        (occupancy status, current tenant id)
    """
    active_ids = [p.id for p in occupants if p.is_active]
    tenant_ids = [pid for pid in active_ids if pid != owner_id]

    if tenant_ids:
        for candidate in (preferred_tenant_id, current_tenant_id):
            if candidate in tenant_ids:
                return OccupancyStatus.RENTED.value, candidate
        return OccupancyStatus.RENTED.value, tenant_ids[0]

    if owner_id is not None and owner_id in active_ids:
        return OccupancyStatus.OWNER_OCCUPIED.value, None
    return OccupancyStatus.VACANT.value, None


class OccupancyCoordinator:
    """
    Assigns, releases and links residents to flats.

    Never swallows errors: failures are raised as typed SocietyHubErrors;
    a PartialWriteError says which side of the edge is still written.
    """

    def __init__(
        self,
        gateway: RecordGateway,
        resolver: SessionResolver,
        config: Optional[Settings] = None,
    ):
        self._gateway = gateway
        self._resolver = resolver
        self._config = config or default_settings

    # ========================================================================
    # Public operations
    # ========================================================================

    async def assign_resident(
        self,
        profile_id: str,
        capacity: Capacity,
        *,
        flat_id: Optional[str] = None,
        flat_number: Optional[str] = None,
        floor: Optional[int] = None,
        from_flat_id: Optional[str] = None,
    ) -> OccupancyResult:
        """
        Make a profile the owner or tenant of a flat.

        The flat is looked up by id, or by (society, flat number) with a
        minimal flat provisioned on first use. A flat change: the profile's
        other membership, whatever capacity it was held in, is released.
        Use ``link_existing_or_new_user`` to add a flat without moving.

        Args:
            profile_id: Resident profile id
            capacity: owner or tenant
            flat_id: Target flat id
            flat_number: Target flat number in the profile's society
            floor: Floor for an auto-provisioned flat
            from_flat_id: Flat being moved away from, when several qualify

        Returns:
            OccupancyResult with the updated profile and flat

        Raises:
            ProfileNotFoundError / FlatNotFoundError: Unknown ids
            InactiveProfileError: The profile is inactive
            CrossSocietyError: Flat belongs to another society
            AmbiguousTargetError: Several flats could be moved away from
            PartialWriteError: One side is still written after a failure
        """
        capacity = Capacity(capacity)
        with self._track("assign"):
            profile = await self._load_profile(profile_id)
            if not profile.is_active:
                raise InactiveProfileError(profile_id)

            if flat_id:
                flat = await self._load_flat(flat_id)
            elif flat_number:
                if not profile.society_id:
                    raise CrossSocietyError(f"Profile {profile_id} belongs to no society")
                flat = await self.find_or_create_flat(profile.society_id, flat_number, floor)
            else:
                raise ValueError("flat_id or flat_number is required")

            self._check_society(profile, flat)
            release_from = await self._previous_flat(profile, flat, from_flat_id)
            return await self._occupy("assign_resident", profile, flat, capacity, release_from=release_from)

    async def release_resident(
        self,
        profile_id: str,
        flat_id: str,
        *,
        retain_ownership: bool = False,
    ) -> OccupancyResult:
        """
        Remove a flat from a profile's memberships and re-derive the flat.

        Args:
            retain_ownership: Keep ``ownerId`` (owner moving out, not selling)

        Raises:
            ProfileNotFoundError / FlatNotFoundError: Unknown ids
            PartialWriteError: One side is still written after a failure
        """
        with self._track("release"):
            profile = await self._load_profile(profile_id)
            flat = await self._load_flat(flat_id)
            return await self._release(profile, flat, retain_ownership=retain_ownership)

    async def deactivate_profile(self, profile_id: str) -> Profile:
        """
        Release every flat a profile occupies or is referenced by, then mark
        it inactive. Profiles are never hard deleted.
        """
        with self._track("deactivate"):
            profile = await self._load_profile(profile_id)

            referenced = set(profile.flat_memberships)
            for column in ("ownerId", "currentTenantId"):
                for record in await self._gateway.list(FLATS, filters={column: profile_id}):
                    referenced.add(record["id"])

            for flat_id in sorted(referenced):
                record = await self._gateway.get(FLATS, flat_id)
                if record is None:
                    logger.warning(f"Profile {profile_id} lists missing flat {flat_id}, dropping it")
                    continue
                profile = await self._load_profile(profile_id)
                await self._release(profile, Flat.from_record(record), retain_ownership=False)

            updated = await self._update_profile(
                profile_id,
                {"status": ProfileStatus.INACTIVE.value, "flatMemberships": []},
            )
            logger.info(f"Deactivated profile {profile_id} (released {len(referenced)} flat(s))")
            return updated

    async def link_existing_or_new_user(
        self,
        email: str,
        flat_id: str,
        capacity: Capacity,
        *,
        name: str = "",
        phone: str = "",
        initial_secret: Optional[str] = None,
        society_id: Optional[str] = None,
        move_in_date: Optional[str] = None,
    ) -> OccupancyResult:
        """
        Grant a flat to the profile with this e-mail, creating it if needed.

        An existing profile keeps its other memberships (union, no move)
        and no second identity is created. A new identity is registered
        without touching the caller's own session, then linked.

        Raises:
            ValueError: No ``initial_secret`` for a new identity
            CrossSocietyError: Profile or ``society_id`` differs from the flat's society
            PartialWriteError: One side is still written after a failure
        """
        capacity = Capacity(capacity)
        email = email.strip().lower()
        with self._track("link"):
            flat = await self._load_flat(flat_id)
            if society_id and society_id != flat.society_id:
                raise CrossSocietyError(
                    f"Flat {flat.id} belongs to society {flat.society_id}, not {society_id}"
                )

            profile = await self._resolver.find_profile_by_email(email)
            if profile is None:
                profile = await self._create_identity(
                    email, flat, capacity,
                    name=name, phone=phone, secret=initial_secret, move_in_date=move_in_date,
                )
            else:
                logger.info(f"Linking existing profile {profile.id} to flat {flat.id}")

            self._check_society(profile, flat)
            return await self._occupy("link_existing_or_new_user", profile, flat, capacity, reactivate=True)

    def select_target_flat(self, profile: Profile, explicit_flat_id: Optional[str] = None) -> str:
        """
        Choose the flat a secondary action applies to.

        The caller's explicit choice always wins; otherwise a single
        membership is used. Several memberships are never guessed between.

        Raises:
            AmbiguousTargetError: Several memberships and no explicit choice
            FlatNotFoundError: No membership and no explicit choice
        """
        if explicit_flat_id:
            return explicit_flat_id
        if len(profile.flat_memberships) == 1:
            return profile.flat_memberships[0]
        if profile.flat_memberships:
            raise AmbiguousTargetError(profile.id, profile.flat_memberships)
        raise FlatNotFoundError(f"Profile {profile.id} has no flat membership")

    async def find_or_create_flat(
        self,
        society_id: str,
        flat_number: str,
        floor: Optional[int] = None,
    ) -> Flat:
        """Look up a flat by (society, number), provisioning a vacant one if absent."""
        record = await self._gateway.find_one(FLATS, societyId=society_id, flatNumber=flat_number)
        if record is not None:
            return Flat.from_record(record)

        flat = Flat(
            id=str(uuid.uuid4()),
            society_id=society_id,
            flat_number=flat_number,
            floor=floor if floor is not None else 1,
            bhk_type=self._config.AUTO_FLAT_BHK_TYPE,
            area=self._config.AUTO_FLAT_AREA,
            occupancy_status=OccupancyStatus.VACANT.value,
        )
        try:
            stored = await self._gateway.insert(FLATS, flat.to_record(exclude_none=True))
        except DuplicateRecordError:
            # Provisioned concurrently
            record = await self._gateway.find_one(FLATS, societyId=society_id, flatNumber=flat_number)
            if record is None:
                raise
            return Flat.from_record(record)

        logger.info(f"Provisioned flat {flat_number} ({stored['id']}) in society {society_id}")
        return Flat.from_record(stored)

    # ========================================================================
    # Edge writes
    # ========================================================================

    async def _occupy(
        self,
        operation: str,
        profile: Profile,
        flat: Flat,
        capacity: Capacity,
        *,
        release_from: Optional[Flat] = None,
        reactivate: bool = False,
    ) -> OccupancyResult:
        memberships = [
            flat_id for flat_id in profile.flat_memberships
            if release_from is None or flat_id != release_from.id
        ]
        if flat.id not in memberships:
            memberships.append(flat.id)

        profile_patch: Dict[str, Any] = {"flatMemberships": memberships}
        if reactivate and not profile.is_active:
            profile_patch["status"] = ProfileStatus.ACTIVE.value
        moved = profile.model_copy(update={
            "flat_memberships": memberships,
            "status": profile_patch.get("status", profile.status),
        })
        overrides = {profile.id: moved}

        saga = Saga(operation)
        saga.add_step(
            "profile", "profile",
            lambda: self._update_profile(profile.id, profile_patch),
            compensation=lambda: self._restore_profile(profile),
        )

        # An ownership transfer drops the flat from the previous owner
        previous_owner = None
        if capacity == Capacity.OWNER and flat.owner_id not in (None, profile.id):
            record = await self._gateway.get(USERS, flat.owner_id)
            if record is not None and flat.id in (record.get("flatMemberships") or []):
                previous_owner = Profile.from_record(record)
        if previous_owner is not None:
            remaining = [f for f in previous_owner.flat_memberships if f != flat.id]
            overrides[previous_owner.id] = previous_owner.model_copy(update={"flat_memberships": remaining})
            saga.add_step(
                "previous_owner", "profile",
                lambda: self._update_profile(previous_owner.id, {"flatMemberships": remaining}),
                compensation=lambda: self._restore_profile(previous_owner),
            )

        if release_from is not None:
            old_owner = release_from.owner_id
            if old_owner == profile.id:
                old_owner = None
            saga.add_step(
                "release_previous_flat", "flat",
                lambda: self._rederive_flat(release_from, old_owner, overrides),
                compensation=lambda: self._restore_flat(release_from),
            )

        if capacity == Capacity.OWNER:
            owner_id, preferred_tenant = profile.id, None
        else:
            owner_id = None if flat.owner_id == profile.id else flat.owner_id
            preferred_tenant = profile.id
        saga.add_step(
            "flat", "flat",
            lambda: self._rederive_flat(flat, owner_id, overrides, preferred_tenant),
            compensation=lambda: self._restore_flat(flat),
        )

        results = await self._run_saga(saga)
        logger.info(
            f"{operation}: profile {profile.id} -> flat {flat.flat_number} ({flat.id}) as {capacity.value}"
            + (f", moved from {release_from.id}" if release_from is not None else "")
        )
        return OccupancyResult(
            profile=results["profile"],
            flat=results["flat"],
            released=[results["release_previous_flat"]] if release_from is not None else [],
        )

    async def _release(self, profile: Profile, flat: Flat, *, retain_ownership: bool) -> OccupancyResult:
        member = profile.member_of(flat.id)
        referenced = profile.id in (flat.owner_id, flat.current_tenant_id)
        if not member and not referenced:
            logger.debug(f"Profile {profile.id} does not occupy flat {flat.id}, nothing to release")
            return OccupancyResult(profile=profile, flat=flat)

        memberships = [f for f in profile.flat_memberships if f != flat.id]
        overrides = {profile.id: profile.model_copy(update={"flat_memberships": memberships})}
        owner_id = flat.owner_id
        if owner_id == profile.id and not retain_ownership:
            owner_id = None

        saga = Saga("release_resident")
        if member:
            saga.add_step(
                "profile", "profile",
                lambda: self._update_profile(profile.id, {"flatMemberships": memberships}),
                compensation=lambda: self._restore_profile(profile),
            )
        saga.add_step(
            "flat", "flat",
            lambda: self._rederive_flat(flat, owner_id, overrides),
            compensation=lambda: self._restore_flat(flat),
        )

        results = await self._run_saga(saga)
        released = results["flat"]
        logger.info(
            f"Released profile {profile.id} from flat {flat.id} "
            f"(now {released.occupancy_status})"
        )
        return OccupancyResult(profile=results.get("profile", profile), flat=released, released=[released])

    async def _rederive_flat(
        self,
        flat: Flat,
        owner_id: Optional[str],
        overrides: Dict[str, Profile],
        preferred_tenant_id: Optional[str] = None,
    ) -> Flat:
        occupants = await self._occupants(flat, overrides)
        status, tenant_id = derive_occupancy(owner_id, flat.current_tenant_id, occupants, preferred_tenant_id)
        patch = {"ownerId": owner_id, "currentTenantId": tenant_id, "occupancyStatus": status}
        match = {"version": flat.version} if self._config.optimistic_occupancy else None
        record = await self._gateway.update(FLATS, flat.id, patch, match=match)
        return Flat.from_record(record)

    async def _occupants(self, flat: Flat, overrides: Dict[str, Profile]) -> List[Profile]:
        """Profiles listing the flat, with in-flight profile changes applied."""
        records = await self._gateway.list(USERS, filters={"societyId": flat.society_id}, order_by=["id"])
        profiles = {record["id"]: Profile.from_record(record) for record in records}
        profiles.update(overrides)
        return [p for p in profiles.values() if p.member_of(flat.id)]

    async def _restore_profile(self, profile: Profile) -> Profile:
        return await self._update_profile(
            profile.id,
            {"flatMemberships": profile.flat_memberships, "status": profile.status},
        )

    async def _restore_flat(self, flat: Flat) -> Flat:
        record = await self._gateway.update(FLATS, flat.id, {
            "ownerId": flat.owner_id,
            "currentTenantId": flat.current_tenant_id,
            "occupancyStatus": flat.occupancy_status,
        })
        return Flat.from_record(record)

    async def _run_saga(self, saga: Saga) -> Dict[str, Any]:
        try:
            return await saga.run()
        except SagaError as e:
            if e.compensated:
                # Nothing of this operation remains written
                if e.completed:
                    logger.warning(
                        f"{saga.name}: rolled back {len(e.completed)} step(s) after "
                        f"'{e.failed_step.name}' failed"
                    )
                raise e.cause

            for side in e.still_written:
                partial_writes_total.labels(side=side).inc()
            logger.error(
                f"{saga.name}: partial write, failed at '{e.failed_step.name}', "
                f"still written: {', '.join(e.still_written)}"
            )
            raise PartialWriteError(
                f"{saga.name} failed at step '{e.failed_step.name}' ({e.cause}); "
                f"still written: {', '.join(e.still_written)}",
                profile_written=e.side_written("profile"),
                flat_written=e.side_written("flat"),
                compensated=False,
                steps_completed=[step.name for step in e.completed],
                failed_step=e.failed_step.name,
            ) from e.cause

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _load_profile(self, profile_id: str) -> Profile:
        record = await self._gateway.get(USERS, profile_id)
        if record is None:
            raise ProfileNotFoundError(profile_id)
        return Profile.from_record(record)

    async def _load_flat(self, flat_id: str) -> Flat:
        record = await self._gateway.get(FLATS, flat_id)
        if record is None:
            raise FlatNotFoundError(f"Flat {flat_id} does not exist", flat_id=flat_id)
        return Flat.from_record(record)

    async def _update_profile(self, profile_id: str, patch: Dict[str, Any]) -> Profile:
        return Profile.from_record(await self._gateway.update(USERS, profile_id, patch))

    async def _previous_flat(
        self,
        profile: Profile,
        target: Flat,
        from_flat_id: Optional[str],
    ) -> Optional[Flat]:
        """The flat an assignment moves away from, in any capacity."""
        others = [flat_id for flat_id in profile.flat_memberships if flat_id != target.id]

        if from_flat_id is not None:
            if from_flat_id not in others:
                raise FlatNotFoundError(
                    f"Profile {profile.id} is not a member of flat {from_flat_id}",
                    flat_id=from_flat_id,
                )
            return await self._load_flat(from_flat_id)

        candidates: List[Flat] = []
        for flat_id in others:
            record = await self._gateway.get(FLATS, flat_id)
            if record is None:
                logger.warning(f"Profile {profile.id} lists missing flat {flat_id}, ignoring it")
                continue
            candidates.append(Flat.from_record(record))

        if len(candidates) > 1:
            raise AmbiguousTargetError(profile.id, [c.id for c in candidates])
        return candidates[0] if candidates else None

    async def _create_identity(
        self,
        email: str,
        flat: Flat,
        capacity: Capacity,
        *,
        name: str,
        phone: str,
        secret: Optional[str],
        move_in_date: Optional[str],
    ) -> Profile:
        if not secret:
            raise ValueError("initial_secret is required to create a new identity")

        draft = DraftProfile(
            name=name,
            phone=phone,
            role=Role.OWNER if capacity == Capacity.OWNER else Role.TENANT,
            society_id=flat.society_id,
            move_in_date=move_in_date,
        )
        try:
            profile = await self._resolver.register(email, secret, draft)
        except (DuplicateIdentityError, AccountExistsError) as e:
            # Created concurrently; link the profile that now exists
            existing = await self._resolver.find_profile_by_email(email)
            if existing is None:
                raise
            logger.warning(f"Identity for {email} appeared during creation ({e}), linking it")
            return existing

        logger.info(f"Created identity {profile.id} for {email}")
        return profile

    @staticmethod
    def _check_society(profile: Profile, flat: Flat) -> None:
        if profile.society_id != flat.society_id:
            raise CrossSocietyError(
                f"Profile {profile.id} (society {profile.society_id or '-'}) cannot occupy "
                f"flat {flat.id} of society {flat.society_id}"
            )

    @contextmanager
    def _track(self, operation: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        except PartialWriteError:
            occupancy_operations_total.labels(operation=operation, outcome="partial").inc()
            raise
        except Exception:
            occupancy_operations_total.labels(operation=operation, outcome="error").inc()
            raise
        else:
            occupancy_operations_total.labels(operation=operation, outcome="success").inc()
        finally:
            occupancy_operation_duration_seconds.labels(operation=operation).observe(
                time.perf_counter() - start
            )
