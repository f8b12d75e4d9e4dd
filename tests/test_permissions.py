"""Tests for kingate/permissions.py: level resolution, roles, branch moderators and suggestion blocks."""
import pytest

from kingate import people, permissions, relations
from kingate.errors import NotFound, Unauthorized
from kingate.models import AuditAction, AuditEntry, Person, Role
from kingate.permissions import PermissionLevel


class TestEvaluate:

    def test_ancestor_has_full(self, db, family):
        assert permissions.evaluate(db, family["A"].id, family["C"].id) == PermissionLevel.FULL

    def test_descendant_has_full(self, db, family):
        assert permissions.evaluate(db, family["C"].id, family["B"].id) == PermissionLevel.FULL
        assert permissions.evaluate(db, family["C"].id, family["A"].id) == PermissionLevel.FULL

    def test_sibling_has_full(self, db, family):
        assert permissions.evaluate(db, family["D"].id, family["B"].id) == PermissionLevel.FULL

    def test_spouse_has_full(self, db, family):
        assert permissions.evaluate(db, family["E"].id, family["B"].id) == PermissionLevel.FULL
        assert permissions.evaluate(db, family["B"].id, family["E"].id) == PermissionLevel.FULL

    def test_former_spouse_only_suggests(self, db, family):
        people.end_marriage(db, family["A"].id, family["marriage"].id)
        assert permissions.evaluate(db, family["E"].id, family["B"].id) == PermissionLevel.SUGGEST

    def test_self_has_full(self, db, stranger):
        assert permissions.evaluate(db, stranger.id, stranger.id) == PermissionLevel.FULL

    def test_admin_has_full_everywhere(self, db, family, admin, super_admin):
        for key in "ABCDEF":
            assert permissions.evaluate(db, admin.id, family[key].id) == PermissionLevel.FULL
            assert permissions.evaluate(db, super_admin.id, family[key].id) == PermissionLevel.FULL

    def test_stranger_suggests(self, db, family, stranger):
        assert permissions.evaluate(db, stranger.id, family["C"].id) == PermissionLevel.SUGGEST

    def test_cousin_suggests(self, db, family):
        cousin = people.create_person(db, "Dee", "female", father_id=family["D"].id)
        assert permissions.evaluate(db, cousin.id, family["C"].id) == PermissionLevel.SUGGEST

    def test_in_law_suggests(self, db, family):
        # F is the mother of B's wife, which is no listed relation.
        assert permissions.evaluate(db, family["F"].id, family["B"].id) == PermissionLevel.SUGGEST

    def test_moderator_role_alone_is_not_full(self, db, family, moderator):
        assert permissions.evaluate(db, moderator.id, family["C"].id) == PermissionLevel.SUGGEST

    def test_missing_people(self, db, family):
        assert permissions.evaluate(db, None, family["A"].id) == PermissionLevel.NONE
        assert permissions.evaluate(db, family["A"].id, None) == PermissionLevel.NONE
        assert permissions.evaluate(db, "ghost", family["A"].id) == PermissionLevel.NONE
        assert permissions.evaluate(db, family["A"].id, "ghost") == PermissionLevel.NONE

    def test_deleted_target_is_none(self, db, family):
        c = family["C"]
        c.deleted_at = c.created_at
        db.commit()
        assert permissions.evaluate(db, family["A"].id, c.id) == PermissionLevel.NONE
        assert permissions.evaluate(db, family["A"].id, c.id,
                                    include_deleted_target=True) == PermissionLevel.FULL

    def test_cyclic_data_still_resolves(self, db, family, stranger, force_parent):
        force_parent(family["A"].id, father_id=family["A"].id)
        assert permissions.evaluate(db, stranger.id, family["A"].id) == PermissionLevel.SUGGEST
        assert permissions.evaluate(db, family["C"].id, family["A"].id) == PermissionLevel.FULL


class TestBlocks:

    def test_blocked_stranger(self, db, family, admin, stranger):
        permissions.block_from_suggesting(db, admin.id, stranger.id, "spam")
        assert permissions.is_blocked(db, stranger.id)
        assert permissions.evaluate(db, stranger.id, family["C"].id) == PermissionLevel.BLOCKED

    def test_block_does_not_override_relationship(self, db, family, admin):
        permissions.block_from_suggesting(db, admin.id, family["D"].id)
        assert permissions.evaluate(db, family["D"].id, family["B"].id) == PermissionLevel.FULL
        assert permissions.evaluate(db, family["D"].id, family["E"].id) == PermissionLevel.BLOCKED

    def test_block_is_idempotent(self, db, admin, stranger):
        first = permissions.block_from_suggesting(db, admin.id, stranger.id)
        second = permissions.block_from_suggesting(db, admin.id, stranger.id)
        assert first == second
        entries = db.query(AuditEntry).filter(AuditEntry.action == AuditAction.SUGGESTION_BLOCK).all()
        assert len(entries) == 1

    def test_unblock(self, db, family, admin, stranger):
        permissions.block_from_suggesting(db, admin.id, stranger.id)
        assert permissions.unblock_from_suggesting(db, admin.id, stranger.id) is True
        assert permissions.unblock_from_suggesting(db, admin.id, stranger.id) is False
        assert permissions.evaluate(db, stranger.id, family["C"].id) == PermissionLevel.SUGGEST

    def test_cannot_block_self(self, db, admin):
        with pytest.raises(Unauthorized, match="yourself"):
            permissions.block_from_suggesting(db, admin.id, admin.id)

    def test_non_admin_cannot_block(self, db, moderator, stranger):
        with pytest.raises(Unauthorized):
            permissions.block_from_suggesting(db, moderator.id, stranger.id)
        assert not permissions.is_blocked(db, stranger.id)

    def test_block_unknown_person(self, db, admin):
        with pytest.raises(NotFound):
            permissions.block_from_suggesting(db, admin.id, "ghost")


class TestBranchModerators:

    def test_grant_covers_branch(self, db, family, admin, stranger):
        root = family["B"]
        permissions.grant_branch_moderator(db, admin.id, stranger.id, root.id)
        branch = relations.all_descendants(db, root.id) | {root.id}
        for person_id in branch:
            assert permissions.evaluate(db, stranger.id, person_id) == PermissionLevel.FULL
        for outside in (family["A"].id, family["D"].id, family["E"].id):
            assert permissions.evaluate(db, stranger.id, outside) == PermissionLevel.SUGGEST

    def test_grant_overrides_block_within_branch(self, db, family, admin, stranger):
        permissions.grant_branch_moderator(db, admin.id, stranger.id, family["B"].id)
        permissions.block_from_suggesting(db, admin.id, stranger.id)
        assert permissions.evaluate(db, stranger.id, family["C"].id) == PermissionLevel.FULL
        assert permissions.evaluate(db, stranger.id, family["D"].id) == PermissionLevel.BLOCKED

    def test_one_active_moderator_per_branch(self, db, family, admin, stranger, moderator):
        root = family["A"]
        first = permissions.grant_branch_moderator(db, admin.id, stranger.id, root.id)
        second = permissions.grant_branch_moderator(db, admin.id, moderator.id, root.id)
        assert first != second
        assert permissions.active_grants(db, stranger.id) == []
        assert [g.id for g in permissions.active_grants(db, moderator.id)] == [second]
        assert permissions.evaluate(db, stranger.id, family["C"].id) == PermissionLevel.SUGGEST

    def test_revoke(self, db, family, admin, stranger):
        permissions.grant_branch_moderator(db, admin.id, stranger.id, family["B"].id)
        permissions.revoke_branch_moderator(db, admin.id, stranger.id, family["B"].id)
        assert permissions.evaluate(db, stranger.id, family["C"].id) == PermissionLevel.SUGGEST
        with pytest.raises(NotFound):
            permissions.revoke_branch_moderator(db, admin.id, stranger.id, family["B"].id)

    def test_only_admin_grants(self, db, family, moderator, stranger):
        with pytest.raises(Unauthorized):
            permissions.grant_branch_moderator(db, moderator.id, stranger.id, family["A"].id)

    def test_grants_are_audited(self, db, family, admin, stranger):
        grant_id = permissions.grant_branch_moderator(db, admin.id, stranger.id, family["A"].id,
                                                      notes="keeps the records")
        entry = db.query(AuditEntry).filter(AuditEntry.record_id == grant_id).one()
        assert entry.action == AuditAction.MODERATOR_GRANT
        assert entry.record_type == "branch_moderator"
        assert entry.is_revertible is False

    def test_moderated_branches(self, db, family, admin, stranger):
        permissions.grant_branch_moderator(db, admin.id, stranger.id, family["A"].id)
        branches = permissions.moderated_branches(db, stranger.id)
        assert [(b["root_id"], b["root_name"]) for b in branches] == [(family["A"].id, "Abe")]


class TestRoles:

    def test_super_admin_sets_role(self, db, super_admin, stranger):
        permissions.set_role(db, super_admin.id, stranger.id, Role.ADMIN)
        assert permissions.is_admin(db, stranger.id)
        history = permissions.role_history(db, stranger.id)
        assert [(g.previous_role, g.role) for g in history] == [(Role.NONE, Role.ADMIN)]

    def test_admin_cannot_set_role(self, db, admin, stranger):
        with pytest.raises(Unauthorized):
            permissions.set_role(db, admin.id, stranger.id, Role.ADMIN)
        assert not permissions.is_admin(db, stranger.id)

    def test_cannot_demote_self(self, db, super_admin):
        with pytest.raises(Unauthorized, match="demote"):
            permissions.set_role(db, super_admin.id, super_admin.id, Role.NONE)
        assert db.get(Person, super_admin.id).role == Role.SUPER_ADMIN

    def test_role_change_is_audited(self, db, super_admin, stranger):
        permissions.set_role(db, super_admin.id, stranger.id, "moderator")
        entry = db.query(AuditEntry).filter(AuditEntry.action == AuditAction.ROLE_CHANGE).one()
        assert entry.old_data == {"role": "none"}
        assert entry.new_data == {"role": "moderator"}
        assert permissions.has_reviewer_role(db, stranger.id)

    def test_bootstrap_only_once(self, db, stranger):
        permissions.bootstrap_super_admin(db, stranger.id)
        assert db.get(Person, stranger.id).role == Role.SUPER_ADMIN
        other = people.create_person(db, "Otto", "male")
        with pytest.raises(Unauthorized):
            permissions.bootstrap_super_admin(db, other.id)

    def test_reviewer_roles(self, db, admin, moderator, stranger):
        assert permissions.has_reviewer_role(db, admin.id)
        assert permissions.has_reviewer_role(db, moderator.id)
        assert not permissions.has_reviewer_role(db, stranger.id)
        assert not permissions.is_admin(db, moderator.id)


class TestSummary:

    def test_permission_summary(self, db, family, admin, stranger):
        permissions.block_from_suggesting(db, admin.id, stranger.id, "spam")
        summary = permissions.permission_summary(db, stranger.id)
        assert summary["role"] == "none"
        assert summary["is_blocked"] is True
        assert summary["block_reason"] == "spam"
        assert summary["is_admin"] is False
        assert summary["moderated_branches"] == []
        assert summary["pending_suggestions"] == 0
