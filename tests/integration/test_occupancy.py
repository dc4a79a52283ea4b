"""
Integration tests for the occupancy coordinator.

Verifies:
- Both sides of the membership edge agree after every operation
- Occupancy status is derived from the profiles listing a flat
- Assignments move away from a previous flat; links take the union
- Failed writes are rolled back, or reported as partial writes
- Optimistic write policy rejects stale flats
"""

import pytest
from unittest.mock import AsyncMock

from societyhub.exceptions import (
    AmbiguousTargetError,
    CrossSocietyError,
    FlatNotFoundError,
    InactiveProfileError,
    PartialWriteError,
    PersistenceError,
    ProfileNotFoundError,
    StaleRecordError,
)
from societyhub.schemas import Capacity, Profile
from societyhub.services.occupancy import OccupancyCoordinator

from conftest import SOCIETY_ID, seed_flat, seed_profile


async def profile_of(gateway, profile_id: str) -> dict:
    return await gateway.inner.get("users", profile_id)


async def flat_of(gateway, flat_id: str) -> dict:
    return await gateway.inner.get("flats", flat_id)


class TestAssignResident:
    """Tests for assign_resident()."""

    @pytest.mark.asyncio
    async def test_tenant_makes_flat_rented(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")

        result = await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")

        assert result.profile.flat_memberships == ["f-1"]
        assert result.flat.occupancy_status == "rented"
        assert result.flat.current_tenant_id == "t-1"
        assert result.flat.owner_id is None
        assert (await profile_of(gateway, "t-1"))["flatMemberships"] == ["f-1"]
        assert (await flat_of(gateway, "f-1"))["occupancyStatus"] == "rented"

    @pytest.mark.asyncio
    async def test_owner_makes_flat_owner_occupied(self, coordinator, gateway):
        await seed_profile(gateway, "o-1", "owner@example.com", role="owner")
        await seed_flat(gateway, "f-1", "A-101")

        result = await coordinator.assign_resident("o-1", Capacity.OWNER, flat_id="f-1")

        assert result.flat.owner_id == "o-1"
        assert result.flat.occupancy_status == "owner-occupied"
        assert result.flat.current_tenant_id is None

    @pytest.mark.asyncio
    async def test_tenant_in_owned_flat_keeps_owner(self, coordinator, gateway):
        await seed_profile(gateway, "o-1", "owner@example.com", role="owner", memberships=["f-1"])
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101", owner_id="o-1", occupancy_status="owner-occupied")

        result = await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")

        assert result.flat.owner_id == "o-1"
        assert result.flat.current_tenant_id == "t-1"
        assert result.flat.occupancy_status == "rented"

    @pytest.mark.asyncio
    async def test_owner_moves_between_flats(self, coordinator, gateway):
        await seed_profile(gateway, "o-1", "owner@example.com", role="owner", memberships=["f-1"])
        await seed_flat(gateway, "f-1", "A-101", owner_id="o-1", occupancy_status="owner-occupied")
        await seed_flat(gateway, "f-2", "B-202")

        result = await coordinator.assign_resident("o-1", Capacity.OWNER, flat_id="f-2")

        assert result.profile.flat_memberships == ["f-2"]
        assert result.flat.owner_id == "o-1"
        assert result.flat.occupancy_status == "owner-occupied"
        assert [f.id for f in result.released] == ["f-1"]

        old = await flat_of(gateway, "f-1")
        assert old["ownerId"] is None
        assert old["occupancyStatus"] == "vacant"

    @pytest.mark.asyncio
    async def test_tenant_moves_between_flats(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com", memberships=["f-1"])
        await seed_flat(gateway, "f-1", "A-101", current_tenant_id="t-1", occupancy_status="rented")
        await seed_flat(gateway, "f-2", "B-202")

        await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-2")

        old = await flat_of(gateway, "f-1")
        assert old["currentTenantId"] is None
        assert old["occupancyStatus"] == "vacant"
        assert (await flat_of(gateway, "f-2"))["currentTenantId"] == "t-1"

    @pytest.mark.asyncio
    async def test_tenant_reassigned_as_owner_elsewhere(self, coordinator, gateway):
        """Test a flat change releases the old flat whatever capacity it was held in."""
        await seed_profile(gateway, "p-1", "resident@example.com", memberships=["f-a"])
        await seed_flat(gateway, "f-a", "A-101", current_tenant_id="p-1", occupancy_status="rented")
        await seed_flat(gateway, "f-b", "B-202")

        result = await coordinator.assign_resident("p-1", Capacity.OWNER, flat_id="f-b")

        assert result.profile.flat_memberships == ["f-b"]
        assert result.flat.owner_id == "p-1"
        assert result.flat.occupancy_status == "owner-occupied"
        old = await flat_of(gateway, "f-a")
        assert old["occupancyStatus"] == "vacant"
        assert old["currentTenantId"] is None

    @pytest.mark.asyncio
    async def test_owner_reassigned_as_tenant_elsewhere(self, coordinator, gateway):
        await seed_profile(gateway, "p-1", "resident@example.com", role="owner", memberships=["f-a"])
        await seed_flat(gateway, "f-a", "A-101", owner_id="p-1", occupancy_status="owner-occupied")
        await seed_flat(gateway, "f-b", "B-202")

        result = await coordinator.assign_resident("p-1", Capacity.TENANT, flat_id="f-b")

        assert result.profile.flat_memberships == ["f-b"]
        assert result.flat.current_tenant_id == "p-1"
        assert result.flat.occupancy_status == "rented"
        old = await flat_of(gateway, "f-a")
        assert old["ownerId"] is None
        assert old["occupancyStatus"] == "vacant"

    @pytest.mark.asyncio
    async def test_mixed_capacity_memberships_are_ambiguous(self, coordinator, gateway):
        await seed_profile(gateway, "p-1", "resident@example.com", role="owner", memberships=["f-1", "f-2"])
        await seed_flat(gateway, "f-1", "A-101", owner_id="p-1", occupancy_status="owner-occupied")
        await seed_flat(gateway, "f-2", "A-102", current_tenant_id="p-1", occupancy_status="rented")
        await seed_flat(gateway, "f-3", "A-103")

        with pytest.raises(AmbiguousTargetError) as exc_info:
            await coordinator.assign_resident("p-1", Capacity.OWNER, flat_id="f-3")

        assert sorted(exc_info.value.candidates) == ["f-1", "f-2"]
        assert gateway.count("update", "flats") == 0

    @pytest.mark.asyncio
    async def test_ownership_transfer_drops_flat_from_previous_owner(self, coordinator, gateway):
        await seed_profile(gateway, "o-1", "seller@example.com", role="owner", memberships=["f-1"])
        await seed_profile(gateway, "o-2", "buyer@example.com", role="owner")
        await seed_flat(gateway, "f-1", "A-101", owner_id="o-1", occupancy_status="owner-occupied")

        result = await coordinator.assign_resident("o-2", Capacity.OWNER, flat_id="f-1")

        assert result.flat.owner_id == "o-2"
        assert result.flat.occupancy_status == "owner-occupied"
        assert (await profile_of(gateway, "o-1"))["flatMemberships"] == []

    @pytest.mark.asyncio
    async def test_several_previous_flats_are_ambiguous(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com", memberships=["f-1", "f-2"])
        await seed_flat(gateway, "f-1", "A-101", current_tenant_id="t-1", occupancy_status="rented")
        await seed_flat(gateway, "f-2", "A-102", current_tenant_id="t-1", occupancy_status="rented")
        await seed_flat(gateway, "f-3", "A-103")

        with pytest.raises(AmbiguousTargetError) as exc_info:
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-3")

        assert sorted(exc_info.value.candidates) == ["f-1", "f-2"]
        assert gateway.count("update", "users") == 0
        assert gateway.count("update", "flats") == 0

    @pytest.mark.asyncio
    async def test_explicit_previous_flat_resolves_ambiguity(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com", memberships=["f-1", "f-2"])
        await seed_flat(gateway, "f-1", "A-101", current_tenant_id="t-1", occupancy_status="rented")
        await seed_flat(gateway, "f-2", "A-102", current_tenant_id="t-1", occupancy_status="rented")
        await seed_flat(gateway, "f-3", "A-103")

        result = await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-3", from_flat_id="f-1")

        assert sorted(result.profile.flat_memberships) == ["f-2", "f-3"]
        assert (await flat_of(gateway, "f-1"))["occupancyStatus"] == "vacant"
        assert (await flat_of(gateway, "f-2"))["occupancyStatus"] == "rented"

    @pytest.mark.asyncio
    async def test_flat_is_provisioned_by_number(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "one@example.com")
        await seed_profile(gateway, "t-2", "two@example.com")

        first = await coordinator.assign_resident("t-1", Capacity.TENANT, flat_number="B-204", floor=2)
        second = await coordinator.assign_resident("t-2", Capacity.TENANT, flat_number="B-204")

        flats = await gateway.list("flats")
        assert len(flats) == 1
        assert first.flat.id == second.flat.id
        assert flats[0]["floor"] == 2
        assert flats[0]["bhkType"] == "2BHK"
        assert flats[0]["area"] == 1200
        assert flats[0]["societyId"] == SOCIETY_ID

    @pytest.mark.asyncio
    async def test_unknown_ids(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com")

        with pytest.raises(ProfileNotFoundError):
            await coordinator.assign_resident("nobody", Capacity.TENANT, flat_id="f-1")
        with pytest.raises(FlatNotFoundError):
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="missing")
        with pytest.raises(ValueError):
            await coordinator.assign_resident("t-1", Capacity.TENANT)

    @pytest.mark.asyncio
    async def test_cross_society_is_rejected(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com", society_id="other-society")
        await seed_flat(gateway, "f-1", "A-101")

        with pytest.raises(CrossSocietyError):
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")
        assert (await flat_of(gateway, "f-1"))["occupancyStatus"] == "vacant"

    @pytest.mark.asyncio
    async def test_inactive_profile_is_rejected(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com", status="inactive")
        await seed_flat(gateway, "f-1", "A-101")

        with pytest.raises(InactiveProfileError):
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")


class TestReleaseResident:
    """Tests for release_resident()."""

    @pytest.mark.asyncio
    async def test_assign_then_release_restores_vacancy(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")

        await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")
        result = await coordinator.release_resident("t-1", "f-1")

        assert result.profile.flat_memberships == []
        assert result.flat.occupancy_status == "vacant"
        assert result.flat.current_tenant_id is None

    @pytest.mark.asyncio
    async def test_tenant_leaving_returns_to_owner_occupied(self, coordinator, gateway):
        await seed_profile(gateway, "o-1", "owner@example.com", role="owner", memberships=["f-1"])
        await seed_profile(gateway, "t-1", "tenant@example.com", memberships=["f-1"])
        await seed_flat(gateway, "f-1", "A-101", owner_id="o-1", current_tenant_id="t-1", occupancy_status="rented")

        result = await coordinator.release_resident("t-1", "f-1")

        assert result.flat.occupancy_status == "owner-occupied"
        assert result.flat.owner_id == "o-1"
        assert result.flat.current_tenant_id is None

    @pytest.mark.asyncio
    async def test_owner_moving_out_can_retain_ownership(self, coordinator, gateway):
        await seed_profile(gateway, "o-1", "owner@example.com", role="owner", memberships=["f-1"])
        await seed_flat(gateway, "f-1", "A-101", owner_id="o-1", occupancy_status="owner-occupied")

        result = await coordinator.release_resident("o-1", "f-1", retain_ownership=True)

        assert result.flat.owner_id == "o-1"
        assert result.flat.occupancy_status == "vacant"
        assert result.profile.flat_memberships == []

    @pytest.mark.asyncio
    async def test_non_occupant_is_a_no_op(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")

        result = await coordinator.release_resident("t-1", "f-1")

        assert result.flat.occupancy_status == "vacant"
        assert gateway.count("update", "flats") == 0
        assert gateway.count("update", "users") == 0


class TestLinkExistingOrNewUser:
    """Tests for link_existing_or_new_user()."""

    @pytest.mark.asyncio
    async def test_existing_profile_gets_union(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com", memberships=["f-1"])
        await seed_flat(gateway, "f-1", "A-101", current_tenant_id="t-1", occupancy_status="rented")
        await seed_flat(gateway, "f-2", "A-102")

        result = await coordinator.link_existing_or_new_user("Tenant@Example.com", "f-2", Capacity.TENANT)

        assert result.profile.id == "t-1"
        assert sorted(result.profile.flat_memberships) == ["f-1", "f-2"]
        assert len(await gateway.list("users")) == 1
        assert (await flat_of(gateway, "f-1"))["occupancyStatus"] == "rented"
        assert (await flat_of(gateway, "f-2"))["currentTenantId"] == "t-1"

    @pytest.mark.asyncio
    async def test_new_identity_is_created_without_session_switch(self, coordinator, gateway, auth):
        await seed_flat(gateway, "f-1", "A-101")

        result = await coordinator.link_existing_or_new_user(
            "new.tenant@example.com", "f-1", Capacity.TENANT,
            name="Nia", initial_secret="welcome-123", move_in_date="2024-04-01",
        )

        profile = result.profile
        assert profile.email == "new.tenant@example.com"
        assert profile.society_id == SOCIETY_ID
        assert profile.role == "tenant"
        assert profile.flat_memberships == ["f-1"]
        assert result.flat.current_tenant_id == profile.id
        assert auth.current is None
        assert "sign_in" not in auth.calls

    @pytest.mark.asyncio
    async def test_new_owner_gets_owner_role(self, coordinator, gateway):
        await seed_flat(gateway, "f-1", "A-101")

        result = await coordinator.link_existing_or_new_user(
            "new.owner@example.com", "f-1", Capacity.OWNER, initial_secret="welcome-123",
        )

        assert result.profile.role == "owner"
        assert result.flat.owner_id == result.profile.id
        assert result.flat.occupancy_status == "owner-occupied"

    @pytest.mark.asyncio
    async def test_new_identity_requires_secret(self, coordinator, gateway):
        await seed_flat(gateway, "f-1", "A-101")

        with pytest.raises(ValueError):
            await coordinator.link_existing_or_new_user("new@example.com", "f-1", Capacity.TENANT)
        assert await gateway.list("users") == []

    @pytest.mark.asyncio
    async def test_inactive_profile_is_reactivated(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com", status="inactive")
        await seed_flat(gateway, "f-1", "A-101")

        result = await coordinator.link_existing_or_new_user("tenant@example.com", "f-1", Capacity.TENANT)

        assert result.profile.status == "active"
        assert result.flat.occupancy_status == "rented"

    @pytest.mark.asyncio
    async def test_society_mismatch(self, coordinator, gateway):
        await seed_flat(gateway, "f-1", "A-101")

        with pytest.raises(CrossSocietyError):
            await coordinator.link_existing_or_new_user(
                "new@example.com", "f-1", Capacity.TENANT,
                initial_secret="welcome-123", society_id="other-society",
            )


class TestSelectTargetFlat:
    """Tests for select_target_flat()."""

    def make_profile(self, memberships):
        return Profile(id="t-1", email="tenant@example.com", flat_memberships=memberships)

    def test_single_membership(self, coordinator):
        assert coordinator.select_target_flat(self.make_profile(["f-1"])) == "f-1"

    def test_explicit_choice_wins(self, coordinator):
        assert coordinator.select_target_flat(self.make_profile(["f-1", "f-2"]), "f-2") == "f-2"

    def test_several_memberships_are_never_guessed(self, coordinator):
        with pytest.raises(AmbiguousTargetError):
            coordinator.select_target_flat(self.make_profile(["f-1", "f-2"]))

    def test_no_membership(self, coordinator):
        with pytest.raises(FlatNotFoundError):
            coordinator.select_target_flat(self.make_profile([]))


class TestDeactivateProfile:
    """Tests for deactivate_profile()."""

    @pytest.mark.asyncio
    async def test_releases_every_flat(self, coordinator, gateway):
        await seed_profile(gateway, "u-1", "resident@example.com", role="owner", memberships=["f-1", "f-2"])
        await seed_flat(gateway, "f-1", "A-101", owner_id="u-1", occupancy_status="owner-occupied")
        await seed_flat(gateway, "f-2", "A-102", current_tenant_id="u-1", occupancy_status="rented")
        # Referenced by the flat but missing from the profile's memberships
        await seed_flat(gateway, "f-3", "A-103", current_tenant_id="u-1", occupancy_status="rented")

        profile = await coordinator.deactivate_profile("u-1")

        assert profile.status == "inactive"
        assert profile.flat_memberships == []
        for flat_id in ("f-1", "f-2", "f-3"):
            flat = await flat_of(gateway, flat_id)
            assert flat["occupancyStatus"] == "vacant"
            assert flat["ownerId"] is None
            assert flat["currentTenantId"] is None
        assert await gateway.get("users", "u-1") is not None


class TestFailures:
    """Tests for rollback and partial writes."""

    @pytest.mark.asyncio
    async def test_flat_failure_rolls_back_profile(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")
        gateway.fail_on("update", "flats", PersistenceError("flats unavailable"))

        with pytest.raises(PersistenceError) as exc_info:
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")

        assert not isinstance(exc_info.value, PartialWriteError)
        assert (await profile_of(gateway, "t-1"))["flatMemberships"] == []
        assert (await flat_of(gateway, "f-1"))["occupancyStatus"] == "vacant"

    @pytest.mark.asyncio
    async def test_failed_rollback_is_partial_write(self, coordinator, gateway, monkeypatch):
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")
        gateway.fail_on("update", "flats", PersistenceError("flats unavailable"))
        monkeypatch.setattr(
            coordinator, "_restore_profile",
            AsyncMock(side_effect=PersistenceError("users unavailable")),
        )

        with pytest.raises(PartialWriteError) as exc_info:
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")

        error = exc_info.value
        assert error.profile_written
        assert not error.flat_written
        assert not error.compensated
        assert error.steps_completed == ["profile"]
        assert error.failed_step == "flat"
        assert (await profile_of(gateway, "t-1"))["flatMemberships"] == ["f-1"]

    @pytest.mark.asyncio
    async def test_profile_failure_writes_nothing(self, coordinator, gateway):
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")
        gateway.fail_on("update", "users", PersistenceError("users unavailable"))

        with pytest.raises(PersistenceError):
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")

        assert gateway.count("update", "flats") == 0


class TestWritePolicy:
    """Tests for the concurrent-write policy."""

    @staticmethod
    def race_on_flat(coordinator, sql_gateway, monkeypatch):
        """Change the flat between it being read and written."""
        original = coordinator._occupants

        async def racing(flat, overrides):
            await sql_gateway.update("flats", flat.id, {"floor": 3})
            return await original(flat, overrides)

        monkeypatch.setattr(coordinator, "_occupants", racing)

    @pytest.mark.asyncio
    async def test_optimistic_rejects_stale_flat(self, gateway, sql_gateway, resolver, test_settings, monkeypatch):
        config = test_settings.model_copy(update={"OCCUPANCY_WRITE_POLICY": "optimistic"})
        coordinator = OccupancyCoordinator(gateway, resolver, config)
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")
        self.race_on_flat(coordinator, sql_gateway, monkeypatch)

        with pytest.raises(StaleRecordError):
            await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")

        assert (await profile_of(gateway, "t-1"))["flatMemberships"] == []

    @pytest.mark.asyncio
    async def test_last_writer_wins_by_default(self, coordinator, gateway, sql_gateway, monkeypatch):
        await seed_profile(gateway, "t-1", "tenant@example.com")
        await seed_flat(gateway, "f-1", "A-101")
        self.race_on_flat(coordinator, sql_gateway, monkeypatch)

        result = await coordinator.assign_resident("t-1", Capacity.TENANT, flat_id="f-1")

        assert result.flat.occupancy_status == "rented"
        assert result.flat.floor == 3
