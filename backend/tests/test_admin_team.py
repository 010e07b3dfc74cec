from sqlalchemy import select

from portal.models.admin import AdminRole, Invitation, InvitationStatus
from portal.models.merchant import KybStatus, MerchantStatus
from portal.models.system import AuditEvent, Notification, NotificationType
from tests.factories import ADMIN_EMAIL, OWNER_EMAIL, create_admin, create_merchant

INVITE_URL = "/api/v1/admin/team/invite"


async def login(db, auth, role=AdminRole.SUPER_ADMIN):
    admin = await create_admin(db, role=role)
    auth.login("user-admin-1", ADMIN_EMAIL)
    return admin


# ==================== 团队 ====================

async def test_invite_admin_and_reject_duplicates(client, db, auth, outbox):
    await login(db, auth)

    invited = await client.post(INVITE_URL, json={"email": " New.Hire@LabSupply.com "})
    assert invited.status_code == 201
    assert invited.json()["email"] == "new.hire@labsupply.com"
    assert invited.json()["status"] == InvitationStatus.PENDING
    assert outbox[-1]["to"] == ["new.hire@labsupply.com"]
    assert "/auth/accept-invite?token=" in outbox[-1]["html"]

    pending = await client.post(INVITE_URL, json={"email": "new.hire@labsupply.com"})
    assert pending.status_code == 409

    existing_admin = await client.post(INVITE_URL, json={"email": ADMIN_EMAIL})
    assert existing_admin.status_code == 409
    assert existing_admin.json()["error"] == "This email is already an admin."

    team = (await client.get("/api/v1/admin/team")).json()
    assert [a["email"] for a in team["admins"]] == [ADMIN_EMAIL]
    assert [i["email"] for i in team["invitations"]] == ["new.hire@labsupply.com"]


async def test_invite_rejects_malformed_email(client, db, auth):
    await login(db, auth)

    for email in ("not-an-email", "x@y", "a@b."):
        response = await client.post(INVITE_URL, json={"email": email})
        assert response.status_code == 400
        assert "email" in response.json()["details"]


async def test_only_super_admin_manages_team(client, db, auth):
    await login(db, auth, role=AdminRole.ADMIN)

    invite = await client.post(INVITE_URL, json={"email": "someone@labsupply.com"})
    listing = await client.get("/api/v1/admin/team")

    assert invite.status_code == 403
    assert listing.status_code == 200


async def test_revoke_invitation(client, db, auth):
    await login(db, auth)
    invited = await client.post(INVITE_URL, json={"email": "temp@labsupply.com"})
    invitation_id = invited.json()["id"]

    revoked = await client.delete(f"/api/v1/admin/team/invite/{invitation_id}")
    again = await client.delete(f"/api/v1/admin/team/invite/{invitation_id}")

    assert revoked.status_code == 200
    assert again.status_code == 404
    invitation = await db.get(Invitation, invitation_id)
    await db.refresh(invitation)
    assert invitation.status == InvitationStatus.REVOKED


async def test_super_admin_cannot_deactivate_self(client, db, auth):
    me = await login(db, auth)
    colleague = await create_admin(db, email="colleague@labsupply.com", role=AdminRole.ADMIN)

    self_update = await client.patch(f"/api/v1/admin/team/{me.id}", json={"is_active": False})
    assert self_update.status_code == 403

    promoted = await client.patch(f"/api/v1/admin/team/{colleague.id}", json={"role": AdminRole.SUPER_ADMIN})
    deactivated = await client.patch(f"/api/v1/admin/team/{colleague.id}", json={"is_active": False})
    assert promoted.json()["role"] == AdminRole.SUPER_ADMIN
    assert deactivated.json()["is_active"] is False

    bad_role = await client.patch(f"/api/v1/admin/team/{colleague.id}", json={"role": "owner"})
    assert bad_role.status_code == 400


# ==================== KYB 审核 ====================

async def test_kyb_queue_lists_pending_merchants(client, db, auth):
    await login(db, auth)
    pending = await create_merchant(db, status=MerchantStatus.PENDING, kyb_status=KybStatus.IN_PROGRESS)
    await create_merchant(db, user_id="user-other", email="approved@acme.com")

    response = await client.get("/api/v1/admin/kyb-review")

    assert [m["id"] for m in response.json()["data"]] == [pending.id]
    assert response.json()["stats"]["approvedCount"] == 1


async def test_kyb_approve_activates_merchant(client, db, auth, outbox, mercury_stub):
    await login(db, auth)
    merchant = await create_merchant(db, status=MerchantStatus.PENDING, kyb_status=KybStatus.IN_PROGRESS)

    response = await client.post("/api/v1/admin/kyb-review", json={"merchantId": merchant.id, "action": "approve"})

    assert response.status_code == 200
    assert response.json()["action"] == "approved"
    await db.refresh(merchant)
    assert merchant.kyb_status == KybStatus.APPROVED
    assert merchant.status == MerchantStatus.ACTIVE
    assert merchant.can_ship is True
    assert merchant.kyb_reviewed_at is not None
    assert merchant.mercury_customer_id.startswith("cust-")
    assert ("POST", "/ar/customers") in mercury_stub.requests
    assert outbox[-1]["to"] == [OWNER_EMAIL]

    notification = (await db.execute(
        select(Notification).where(Notification.merchant_id == merchant.id)
    )).scalars().one()
    assert notification.type == NotificationType.KYB_APPROVED
    actions = (await db.execute(select(AuditEvent.action).where(AuditEvent.entity_id == merchant.id))).scalars().all()
    assert "kyb.approved" in actions


async def test_kyb_reject_suspends_merchant(client, db, auth, outbox):
    await login(db, auth)
    merchant = await create_merchant(db, status=MerchantStatus.PENDING, kyb_status=KybStatus.IN_PROGRESS)

    response = await client.post("/api/v1/admin/kyb-review", json={
        "merchantId": merchant.id,
        "action": "reject",
        "reason": "License expired",
    })

    assert response.json()["action"] == "rejected"
    await db.refresh(merchant)
    assert merchant.kyb_status == KybStatus.REJECTED
    assert merchant.status == MerchantStatus.SUSPENDED
    assert merchant.can_ship is False
    assert merchant.kyb_rejection_reason == "License expired"
    assert "License expired" in outbox[-1]["html"]

    notification = (await db.execute(
        select(Notification).where(Notification.merchant_id == merchant.id)
    )).scalars().one()
    assert notification.type == NotificationType.KYB_REJECTED


async def test_kyb_review_validation(client, db, auth):
    await login(db, auth)

    unknown = await client.post("/api/v1/admin/kyb-review", json={"merchantId": "missing", "action": "approve"})
    bad_action = await client.post("/api/v1/admin/kyb-review", json={"merchantId": "missing", "action": "maybe"})

    assert unknown.status_code == 404
    assert bad_action.status_code == 400
