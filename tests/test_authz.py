"""Tests for the authorization rule table."""

from __future__ import annotations

import pytest

from bugbase.authz import ALLOWED, Denied, Target, authorize, effective_capabilities, require
from bugbase.errors import Forbidden
from bugbase.models import ALL_CAPABILITIES, Capability, ProjectMembership, Subject

PROJECT = "prj-1"


def _subject(role: str, sid: str = "usr-actor") -> Subject:
    return Subject(id=sid, username=sid.replace("-", "_"), role=role)


def _member(subject: Subject, caps: Capability = Capability.NONE) -> ProjectMembership:
    return ProjectMembership(project_id=PROJECT, subject_id=subject.id, capabilities=caps)


def _target(subject: Subject | None = None, caps: Capability = Capability.NONE, **kwargs: object) -> Target:
    membership = _member(subject, caps) if subject is not None else None
    return Target(project_id=PROJECT, membership=membership, **kwargs)  # type: ignore[arg-type]


class TestMembership:
    def test_non_member_denied(self) -> None:
        dev = _subject("DEVELOPER")
        decision = authorize(dev, "view", _target())
        assert isinstance(decision, Denied)
        assert decision.reason == "NOT_A_MEMBER"

    def test_admin_needs_no_membership(self) -> None:
        admin = _subject("ADMIN")
        for action in ("view", "create-bug", "update-bug", "delete-bug", "manage-members", "delete-comment"):
            assert authorize(admin, action, _target()) is ALLOWED  # type: ignore[arg-type]

    def test_member_may_view(self) -> None:
        rep = _subject("REPORTER")
        assert authorize(rep, "view", _target(rep))

    def test_no_capability_from_membership_without_role(self) -> None:
        assert effective_capabilities(_subject("REPORTER"), None) == Capability.NONE


class TestCapabilities:
    def test_role_grants_capability(self) -> None:
        dev = _subject("DEVELOPER")
        assert authorize(dev, "update-bug", _target(dev))
        assert authorize(dev, "create-bug", _target(dev))

    def test_reporter_cannot_update(self) -> None:
        rep = _subject("REPORTER")
        decision = authorize(rep, "update-bug", _target(rep, Capability.COMMENT))
        assert isinstance(decision, Denied)
        assert decision.reason == "MISSING_CAPABILITY"

    def test_membership_capability_adds_to_role(self) -> None:
        rep = _subject("REPORTER")
        assert authorize(rep, "update-bug", _target(rep, Capability.MANAGE_BUGS))

    def test_manage_members_requires_manage_project(self) -> None:
        qa = _subject("QA")
        assert not authorize(qa, "manage-members", _target(qa))
        assert authorize(qa, "manage-members", _target(qa, Capability.MANAGE_PROJECT))

    def test_effective_capabilities_union(self) -> None:
        rep = _subject("REPORTER")
        caps = effective_capabilities(rep, _member(rep, Capability.TEST))
        assert caps == Capability.COMMENT | Capability.TEST
        pm = _subject("PROJECT_MANAGER")
        assert effective_capabilities(pm, _member(pm)) == ALL_CAPABILITIES


class TestDeleteBug:
    def test_reporter_may_delete_own_bug(self) -> None:
        rep = _subject("REPORTER")
        assert authorize(rep, "delete-bug", _target(rep, reporter_id=rep.id))

    def test_reporter_role_cannot_delete_others_bug(self) -> None:
        rep = _subject("REPORTER")
        decision = authorize(rep, "delete-bug", _target(rep, Capability.MANAGE_BUGS, reporter_id="usr-other"))
        assert isinstance(decision, Denied)
        assert decision.reason == "INSUFFICIENT_ROLE"

    def test_developer_cannot_delete_others_bug(self) -> None:
        dev = _subject("DEVELOPER")
        decision = authorize(dev, "delete-bug", _target(dev, ALL_CAPABILITIES, reporter_id="usr-other"))
        assert isinstance(decision, Denied)
        assert decision.reason == "INSUFFICIENT_ROLE"

    def test_project_manager_may_delete_any(self) -> None:
        pm = _subject("PROJECT_MANAGER")
        assert authorize(pm, "delete-bug", _target(pm, reporter_id="usr-other"))

    def test_project_manager_must_still_be_member(self) -> None:
        pm = _subject("PROJECT_MANAGER")
        decision = authorize(pm, "delete-bug", _target(reporter_id="usr-other"))
        assert isinstance(decision, Denied)
        assert decision.reason == "NOT_A_MEMBER"


class TestComments:
    def test_edit_is_author_only_even_for_admin(self) -> None:
        admin = _subject("ADMIN")
        decision = authorize(admin, "edit-comment", _target(admin, author_id="usr-other"))
        assert isinstance(decision, Denied)
        assert decision.reason == "NOT_AUTHOR"

    def test_author_may_edit(self) -> None:
        rep = _subject("REPORTER")
        assert authorize(rep, "edit-comment", _target(rep, author_id=rep.id))

    def test_author_must_be_member_to_edit(self) -> None:
        rep = _subject("REPORTER")
        decision = authorize(rep, "edit-comment", _target(author_id=rep.id))
        assert isinstance(decision, Denied)
        assert decision.reason == "NOT_A_MEMBER"

    def test_delete_by_author_or_manager(self) -> None:
        rep = _subject("REPORTER")
        pm = _subject("PROJECT_MANAGER", "usr-pm")
        assert authorize(rep, "delete-comment", _target(rep, author_id=rep.id))
        assert authorize(pm, "delete-comment", _target(pm, author_id=rep.id))
        dev = _subject("DEVELOPER", "usr-dev")
        decision = authorize(dev, "delete-comment", _target(dev, ALL_CAPABILITIES, author_id=rep.id))
        assert isinstance(decision, Denied)
        assert decision.reason == "INSUFFICIENT_ROLE"

    def test_comment_needs_comment_capability(self) -> None:
        rep = _subject("REPORTER")
        assert authorize(rep, "comment", _target(rep))


class TestWatchAndAssignee:
    def test_watch_self(self) -> None:
        rep = _subject("REPORTER")
        assert authorize(rep, "watch", _target(rep, on_behalf_of=rep.id))

    def test_watch_on_behalf_needs_manage_bugs(self) -> None:
        rep = _subject("REPORTER")
        decision = authorize(rep, "watch", _target(rep, on_behalf_of="usr-other"))
        assert isinstance(decision, Denied)
        assert decision.reason == "MISSING_CAPABILITY"
        dev = _subject("DEVELOPER")
        assert authorize(dev, "watch", _target(dev, on_behalf_of="usr-other"))

    def test_create_with_non_member_assignee(self) -> None:
        dev = _subject("DEVELOPER")
        decision = authorize(dev, "create-bug", _target(dev, assignee_id="usr-x", assignee_is_member=False))
        assert isinstance(decision, Denied)
        assert decision.reason == "ASSIGNEE_NOT_MEMBER"


class TestRequire:
    def test_require_raises_forbidden(self) -> None:
        rep = _subject("REPORTER")
        with pytest.raises(Forbidden) as exc_info:
            require(rep, "update-bug", _target(rep))
        assert exc_info.value.reason == "MISSING_CAPABILITY"
        assert exc_info.value.details == {"reason": "MISSING_CAPABILITY"}

    def test_require_passes_silently(self) -> None:
        dev = _subject("DEVELOPER")
        require(dev, "update-bug", _target(dev))
