"""Tests for tenant provisioning: organizations, memberships and bootstrap."""

import pytest

from tenantauth.service.errors import (
    ConflictError,
    DepartmentNotFound,
    NotFoundError,
    OrganizationNotFound,
    UserNotFound,
    ValidationError,
)
from tenantauth.service.provisioning import BootstrapInput, ProvisioningService
from tenantauth.storage.models import SYSTEM_ADMIN_ROLE, DepartmentKind


@pytest.fixture
def provisioning(memory_store, settings):
    return ProvisioningService(memory_store, settings)


@pytest.fixture
def bootstrap_input(settings):
    return BootstrapInput.from_settings(settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_account("sam@example.com", "sam", "hash")


class TestEnsureOrganization:
    def test_creates_when_missing(self, provisioning, memory_store):
        org = provisioning.ensure_organization("Acme", "First", "acme.example")
        assert memory_store.get_organization(org.id).domain == "acme.example"

    def test_same_domain_twice_keeps_one_row_with_new_description(
        self, provisioning, memory_store
    ):
        first = provisioning.ensure_organization("Acme", "First", "acme.example")
        second = provisioning.ensure_organization("Acme", "Second", "acme.example")
        assert second.id == first.id
        assert len(memory_store.list_organizations()) == 1
        assert memory_store.get_organization(first.id).description == "Second"

    def test_matches_by_name_when_domain_unknown(self, provisioning, memory_store):
        first = provisioning.ensure_organization("Acme", "", "")
        healed = provisioning.ensure_organization("Acme", "", "acme.example")
        assert healed.id == first.id
        assert healed.domain == "acme.example"

    def test_reactivates_inactive_match(self, provisioning, memory_store):
        org = memory_store.create_organization("Acme", "", "acme.example", is_active=False)
        assert provisioning.ensure_organization("Acme", "", "acme.example").is_active
        assert memory_store.get_organization(org.id).is_active

    def test_empty_values_do_not_overwrite(self, provisioning, memory_store):
        org = provisioning.ensure_organization("Acme", "Keep me", "acme.example")
        provisioning.ensure_organization("Acme", "", "")
        assert memory_store.get_organization(org.id).description == "Keep me"

    def test_requires_name(self, provisioning):
        with pytest.raises(ValidationError):
            provisioning.ensure_organization("  ")


class TestOrganizationsAndDepartments:
    def test_duplicate_domain_conflicts(self, provisioning):
        provisioning.create_organization("A", domain="dup.example")
        with pytest.raises(ConflictError):
            provisioning.create_organization("B", domain="DUP.example")

    def test_child_organization_requires_parent(self, provisioning):
        with pytest.raises(OrganizationNotFound):
            provisioning.create_organization("Child", parent_id=99)

    def test_department_defaults_to_department_kind(self, provisioning):
        org = provisioning.create_organization("Acme")
        dept = provisioning.create_department(org.id, "Engineering", code="ENG")
        assert dept.kind is DepartmentKind.DEPARTMENT
        assert dept.code == "ENG"

    def test_department_parent_must_share_organization(self, provisioning):
        a = provisioning.create_organization("A")
        b = provisioning.create_organization("B")
        parent = provisioning.create_department(a.id, "Division", kind=DepartmentKind.DIVISION)
        with pytest.raises(ValidationError):
            provisioning.create_department(b.id, "Team", parent_id=parent.id)

    def test_department_parent_must_exist(self, provisioning):
        org = provisioning.create_organization("A")
        with pytest.raises(DepartmentNotFound):
            provisioning.create_department(org.id, "Team", parent_id=123)

    def test_department_requires_organization(self, provisioning):
        with pytest.raises(OrganizationNotFound):
            provisioning.create_department(77, "Orphan")

    def test_list_departments(self, provisioning):
        org = provisioning.create_organization("A")
        provisioning.create_department(org.id, "One")
        provisioning.create_department(org.id, "Two")
        assert {d.name for d in provisioning.list_departments(org.id)} == {"One", "Two"}


class TestMemberships:
    def test_at_most_one_primary_organization(self, provisioning, memory_store, user):
        a = provisioning.create_organization("A")
        b = provisioning.create_organization("B")
        provisioning.assign_user_to_organization(user.id, a.id, is_primary=True)
        provisioning.assign_user_to_organization(user.id, b.id, is_primary=True)

        memberships = provisioning.list_user_organizations(user.id)
        assert [m.organization_id for m in memberships if m.is_primary] == [b.id]
        assert memory_store.get_account(user.id).primary_organization_id == b.id

    def test_at_most_one_primary_department(self, provisioning, memory_store, user):
        org = provisioning.create_organization("A")
        d1 = provisioning.create_department(org.id, "One")
        d2 = provisioning.create_department(org.id, "Two")
        provisioning.assign_user_to_department(user.id, d1.id, is_primary=True)
        provisioning.assign_user_to_department(user.id, d2.id, role="LEAD", is_primary=True)

        memberships = provisioning.list_user_departments(user.id)
        assert memberships[0].department_id == d2.id
        assert memberships[0].role == "LEAD"
        assert sum(m.is_primary for m in memberships) == 1
        assert memory_store.get_account(user.id).primary_department_id == d2.id

    def test_reassign_updates_role_in_place(self, provisioning, user):
        org = provisioning.create_organization("A")
        provisioning.assign_user_to_organization(user.id, org.id, "MEMBER")
        provisioning.assign_user_to_organization(user.id, org.id, "OWNER")
        memberships = provisioning.list_user_organizations(user.id)
        assert len(memberships) == 1
        assert memberships[0].role == "OWNER"

    def test_demoting_primary_clears_account_primary(self, provisioning, memory_store, user):
        org = provisioning.create_organization("A")
        provisioning.assign_user_to_organization(user.id, org.id, is_primary=True)
        provisioning.assign_user_to_organization(user.id, org.id, is_primary=False)
        assert memory_store.get_account(user.id).primary_organization_id is None

    def test_remove_membership(self, provisioning, memory_store, user):
        org = provisioning.create_organization("A")
        provisioning.assign_user_to_organization(user.id, org.id, is_primary=True)
        provisioning.remove_user_from_organization(user.id, org.id)
        assert provisioning.list_user_organizations(user.id) == []
        assert memory_store.get_account(user.id).primary_organization_id is None
        with pytest.raises(NotFoundError):
            provisioning.remove_user_from_organization(user.id, org.id)

    def test_assignment_requires_existing_rows(self, provisioning, user):
        org = provisioning.create_organization("A")
        with pytest.raises(UserNotFound):
            provisioning.assign_user_to_organization(999, org.id)
        with pytest.raises(OrganizationNotFound):
            provisioning.assign_user_to_organization(user.id, 999)
        with pytest.raises(DepartmentNotFound):
            provisioning.assign_user_to_department(user.id, 999)


class TestBootstrapAdmin:
    def test_creates_root_tenant(self, provisioning, memory_store, bootstrap_input):
        result = provisioning.bootstrap_admin(bootstrap_input)

        assert result.created
        assert result.organization.domain == "root.local"
        assert result.account.is_super_admin
        assert result.account.primary_organization_id == result.organization.id
        memberships = memory_store.list_user_organizations(result.account.id)
        assert [(m.organization_id, m.role, m.is_primary) for m in memberships] == [
            (result.organization.id, SYSTEM_ADMIN_ROLE, True)
        ]

    def test_twice_is_idempotent(self, provisioning, memory_store, bootstrap_input):
        first = provisioning.bootstrap_admin(bootstrap_input)
        second = provisioning.bootstrap_admin(bootstrap_input)

        assert not second.created
        assert not second.password_updated
        assert second.account.id == first.account.id
        assert second.account.password_hash == first.account.password_hash
        assert len(memory_store.list_organizations()) == 1
        assert memory_store.count_accounts() == 1
        assert len(memory_store.list_user_organizations(first.account.id)) == 1

    def test_force_password_rehashes(self, provisioning, bootstrap_input):
        original_hash = provisioning.bootstrap_admin(bootstrap_input).account.password_hash
        bootstrap_input.force_password_reset = True
        second = provisioning.bootstrap_admin(bootstrap_input)
        assert second.password_updated
        assert second.account.password_hash != original_hash

    def test_changed_password_is_applied(self, provisioning, bootstrap_input):
        provisioning.bootstrap_admin(bootstrap_input)
        bootstrap_input.admin_password = "An0ther-Passw0rd"
        result = provisioning.bootstrap_admin(bootstrap_input)
        assert result.password_updated
        assert provisioning.passwords.verify(result.account.password_hash, "An0ther-Passw0rd")

    def test_promotes_existing_account(self, provisioning, memory_store, bootstrap_input):
        existing = memory_store.create_account(
            bootstrap_input.admin_email, "legacy", "hash", is_active=False
        )
        result = provisioning.bootstrap_admin(bootstrap_input)
        assert result.account.id == existing.id
        assert result.account.is_active
        assert result.account.is_super_admin
        assert result.account.username == bootstrap_input.admin_username

    def test_username_defaults_to_email(self, provisioning, bootstrap_input):
        bootstrap_input.admin_username = ""
        result = provisioning.bootstrap_admin(bootstrap_input)
        assert result.account.username == bootstrap_input.admin_email

    def test_rejects_short_password(self, provisioning, memory_store, bootstrap_input):
        bootstrap_input.admin_password = "short"
        with pytest.raises(ValidationError):
            provisioning.bootstrap_admin(bootstrap_input)
        assert memory_store.list_organizations() == []
