"""
Edit request tests (editing an order that is past DRAFT).

Verifies:
- Staff cannot edit a CONFIRMED order until an edit request is approved
- Approval opens a window of EDIT_PERMISSION_MINUTES for the requester only
- expire_edit_permissions() closes run-out windows and tells the requester
- Holders of EDIT_LOCKED_ORDERS edit directly and review requests
"""

from datetime import timedelta

import pytest

from backoffice.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from backoffice.extensions import dispatcher
from backoffice.models import AuditLogEntry, EditRequest, Notification, Order
from backoffice.services import authorization_service, lifecycle_service, order_service
from backoffice.time_utils import utcnow


@pytest.fixture
def confirmed_order(seed):
    """Order in CONFIRMED, created by staff."""
    order = lifecycle_service.create_document(
        "ORDER", user_id=seed.staff.id, fields={"client_name": "Acme", "notes": "first"}
    )
    lifecycle_service.change_status("ORDER", order.id, "CONFIRMED", user_id=seed.staff.id)
    return order


def approved_edit(seed, order):
    request = authorization_service.request_edit("ORDER", order.id, seed.staff.id, "Client changed the address")
    return authorization_service.approve_edit(request.id, seed.admin.id, notes="Go ahead")


def backdate(db_session, request, **delta):
    db_session.query(EditRequest).filter_by(id=request.id).update(
        {"expires_at": utcnow() - timedelta(**delta)}
    )
    db_session.commit()


# =============================================================================
# SCENARIO: REQUEST, APPROVE, EDIT
# =============================================================================


class TestEditWindow:

    def test_locked_order_needs_a_request(self, db_session, seed, confirmed_order):
        with pytest.raises(ValidationError, match="request edit permission"):
            lifecycle_service.update_document(
                "ORDER", confirmed_order.id, {"notes": "late"}, user_id=seed.staff.id
            )

    def test_approved_request_opens_window_for_requester(self, db_session, seed, confirmed_order):
        request = authorization_service.request_edit(
            "ORDER", confirmed_order.id, seed.staff.id, "Client changed the address"
        )
        assert request.status == "PENDING"
        assert request.expires_at is None
        assert not authorization_service.has_active_edit_permission("ORDER", confirmed_order.id, seed.staff.id)

        approved = authorization_service.approve_edit(request.id, seed.admin.id, notes="Go ahead")

        assert approved.status == "APPROVED"
        assert approved.reviewed_by_user_id == seed.admin.id
        assert approved.review_notes == "Go ahead"
        window = approved.expires_at - approved.reviewed_at
        assert abs(window - timedelta(minutes=5)) < timedelta(seconds=5)
        assert authorization_service.has_active_edit_permission("ORDER", confirmed_order.id, seed.staff.id)

        order = lifecycle_service.update_document(
            "ORDER", confirmed_order.id, {"notes": "new address"}, user_id=seed.staff.id
        )
        assert order.notes == "new address"
        assert order.status == "CONFIRMED"

    def test_window_length_is_configurable(self, app, db_session, seed, confirmed_order):
        original = app.config["EDIT_PERMISSION_MINUTES"]
        app.config["EDIT_PERMISSION_MINUTES"] = 30
        try:
            approved = approved_edit(seed, confirmed_order)
        finally:
            app.config["EDIT_PERMISSION_MINUTES"] = original

        assert approved.expires_at - approved.reviewed_at > timedelta(minutes=29)

    def test_permission_belongs_to_the_requester(self, db_session, seed, confirmed_order):
        approved_edit(seed, confirmed_order)

        with pytest.raises(ValidationError):
            lifecycle_service.update_document(
                "ORDER", confirmed_order.id, {"notes": "not mine"}, user_id=seed.manager.id
            )

    def test_permission_ends_when_order_leaves_requestable_statuses(self, db_session, seed, confirmed_order):
        approved_edit(seed, confirmed_order)
        lifecycle_service.change_status("ORDER", confirmed_order.id, "CANCELLED", user_id=seed.staff.id)

        with pytest.raises(ValidationError):
            lifecycle_service.update_document(
                "ORDER", confirmed_order.id, {"notes": "too late"}, user_id=seed.staff.id
            )

    def test_items_stay_draft_only(self, db_session, seed, confirmed_order):
        approved_edit(seed, confirmed_order)

        with pytest.raises(ValidationError):
            order_service.add_item(confirmed_order.id, "Extra", 1, 100, user_id=seed.staff.id)

    def test_reviewers_and_requester_are_notified(self, db_session, seed, confirmed_order):
        approved_edit(seed, confirmed_order)

        reviewers = {n.user_id for n in db_session.query(Notification).filter_by(title="Edit requested")}
        assert reviewers == {seed.admin.id}

        notice = db_session.query(Notification).filter_by(title="Edit approved").one()
        assert notice.user_id == seed.staff.id
        assert confirmed_order.order_number in notice.message

    def test_edit_requests_are_audited(self, db_session, seed, confirmed_order):
        request = approved_edit(seed, confirmed_order)
        assert dispatcher.drain(10)

        entries = db_session.query(AuditLogEntry).filter_by(
            model="EditRequest", record_id=str(request.id)
        ).order_by(AuditLogEntry.id).all()
        assert [e.action for e in entries] == ["CREATE", "UPDATE"]
        assert entries[1].new_data["status"] == "APPROVED"
        assert entries[1].new_data["expires_at"] is not None


# =============================================================================
# EXPIRY
# =============================================================================


class TestExpiry:

    def test_run_out_window_blocks_edits(self, db_session, seed, confirmed_order):
        request = approved_edit(seed, confirmed_order)
        backdate(db_session, request, seconds=1)

        assert not authorization_service.has_active_edit_permission("ORDER", confirmed_order.id, seed.staff.id)
        with pytest.raises(ValidationError):
            lifecycle_service.update_document(
                "ORDER", confirmed_order.id, {"notes": "expired"}, user_id=seed.staff.id
            )

    def test_expire_marks_requests_and_notifies(self, db_session, seed, confirmed_order):
        request = approved_edit(seed, confirmed_order)
        backdate(db_session, request, minutes=1)

        assert authorization_service.expire_edit_permissions() == 1

        assert authorization_service.get_edit_request(request.id).status == "EXPIRED"
        notice = db_session.query(Notification).filter_by(title="Edit permission expired").one()
        assert notice.user_id == seed.staff.id
        assert notice.related_id == request.id

        # Nothing left to expire
        assert authorization_service.expire_edit_permissions() == 0

    def test_open_windows_are_left_alone(self, db_session, seed, confirmed_order):
        request = approved_edit(seed, confirmed_order)

        assert authorization_service.expire_edit_permissions() == 0
        assert authorization_service.get_edit_request(request.id).status == "APPROVED"

        later = utcnow() + timedelta(minutes=6)
        assert not authorization_service.has_active_edit_permission(
            "ORDER", confirmed_order.id, seed.staff.id, now=later
        )
        assert authorization_service.expire_edit_permissions(now=later) == 1

    def test_pending_and_rejected_requests_never_expire(self, db_session, seed, confirmed_order):
        pending = authorization_service.request_edit("ORDER", confirmed_order.id, seed.staff.id)
        rejected = authorization_service.request_edit("ORDER", confirmed_order.id, seed.manager.id)
        authorization_service.reject_edit(rejected.id, seed.admin.id)

        assert authorization_service.expire_edit_permissions(now=utcnow() + timedelta(days=1)) == 0
        assert authorization_service.get_edit_request(pending.id).status == "PENDING"
        assert authorization_service.get_edit_request(rejected.id).status == "REJECTED"


# =============================================================================
# FILING AND REVIEW RULES
# =============================================================================


class TestFilingRules:

    def test_override_holder_edits_directly(self, db_session, seed, confirmed_order):
        order = lifecycle_service.update_document(
            "ORDER", confirmed_order.id, {"notes": "admin fix"}, user_id=seed.admin.id
        )
        assert order.notes == "admin fix"

        with pytest.raises(ValidationError):
            authorization_service.request_edit("ORDER", confirmed_order.id, seed.admin.id)

    def test_draft_order_needs_no_request(self, db_session, seed):
        order = lifecycle_service.create_document("ORDER", user_id=seed.staff.id)
        with pytest.raises(ValidationError):
            authorization_service.request_edit("ORDER", order.id, seed.staff.id)

    def test_terminal_status_takes_no_requests(self, db_session, seed, confirmed_order):
        lifecycle_service.change_status("ORDER", confirmed_order.id, "CANCELLED", user_id=seed.staff.id)
        with pytest.raises(ValidationError):
            authorization_service.request_edit("ORDER", confirmed_order.id, seed.staff.id)

    def test_other_document_types_have_no_edit_requests(self, db_session, seed):
        quote = lifecycle_service.create_document("QUOTE", user_id=seed.staff.id)
        with pytest.raises(ValidationError):
            authorization_service.request_edit("QUOTE", quote.id, seed.staff.id)

    def test_one_pending_request_per_requester(self, db_session, seed, confirmed_order):
        authorization_service.request_edit("ORDER", confirmed_order.id, seed.staff.id)

        with pytest.raises(ConflictError):
            authorization_service.request_edit("ORDER", confirmed_order.id, seed.staff.id)

        # Another user may still ask
        other = authorization_service.request_edit("ORDER", confirmed_order.id, seed.manager.id)
        assert [r.id for r in authorization_service.find_pending_edit_requests("ORDER")][-1] == other.id

    def test_reviewer_needs_override_capability(self, db_session, seed, confirmed_order):
        request = authorization_service.request_edit("ORDER", confirmed_order.id, seed.staff.id)

        with pytest.raises(PermissionDeniedError):
            authorization_service.approve_edit(request.id, seed.manager.id)
        with pytest.raises(PermissionDeniedError):
            authorization_service.reject_edit(request.id, seed.manager.id)
        assert authorization_service.get_edit_request(request.id).status == "PENDING"

    def test_reject_notifies_and_resolves_once(self, db_session, seed, confirmed_order):
        request = authorization_service.request_edit("ORDER", confirmed_order.id, seed.staff.id)

        rejected = authorization_service.reject_edit(request.id, seed.admin.id, notes="Already shipped")

        assert rejected.status == "REJECTED"
        assert rejected.expires_at is None
        notice = db_session.query(Notification).filter_by(title="Edit rejected").one()
        assert notice.user_id == seed.staff.id
        assert "Already shipped" in notice.message

        with pytest.raises(ConflictError):
            authorization_service.approve_edit(request.id, seed.admin.id)

    def test_unknown_request(self, db_session, seed):
        with pytest.raises(NotFoundError):
            authorization_service.approve_edit(4040, seed.admin.id)

    def test_requester_must_manage_orders(self, db_session, seed, confirmed_order):
        from backoffice.models import User

        outsider = User(email="outsider@test.local")
        db_session.add(outsider)
        db_session.commit()

        with pytest.raises(PermissionDeniedError):
            authorization_service.request_edit("ORDER", confirmed_order.id, outsider.id)
        assert db_session.get(Order, confirmed_order.id).status == "CONFIRMED"
