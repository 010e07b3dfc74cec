import base64

import pytest

from portal.models.merchant import KybStatus, MerchantStatus
from tests.factories import OWNER_EMAIL, OWNER_USER_ID, create_merchant

DOCUMENTS_URL = "/api/v1/onboarding/documents"
PDF = ("license.pdf", b"%PDF-1.4 test", "application/pdf")


@pytest.fixture
def applicant(db, auth):
    async def _applicant(kyb_status=KybStatus.NOT_STARTED):
        merchant = await create_merchant(db, status=MerchantStatus.PENDING, kyb_status=kyb_status)
        auth.login(OWNER_USER_ID, OWNER_EMAIL)
        return merchant

    return _applicant


async def test_upload_document_starts_review(client, db, applicant, storage_requests):
    merchant = await applicant()

    response = await client.post(DOCUMENTS_URL, files={"file": PDF}, data={"document_type": "businessLicense"})

    assert response.status_code == 201
    assert response.json()["data"]["storage_path"] == f"{OWNER_USER_ID}/kyb/businessLicense.pdf"
    assert storage_requests[-1][1].endswith(f"/object/merchant-uploads/{OWNER_USER_ID}/kyb/businessLicense.pdf")
    await db.refresh(merchant)
    assert merchant.kyb_status == KybStatus.IN_PROGRESS

    listing = await client.get(DOCUMENTS_URL)
    assert [d["document_type"] for d in listing.json()["data"]] == ["businessLicense"]


async def test_reupload_keeps_one_document_per_type(client, applicant):
    await applicant()

    await client.post(DOCUMENTS_URL, files={"file": PDF}, data={"document_type": "governmentId"})
    await client.post(DOCUMENTS_URL, files={"file": ("id.png", b"png", "image/png")}, data={"document_type": "governmentId"})

    docs = (await client.get(DOCUMENTS_URL)).json()["data"]
    assert len(docs) == 1
    assert docs[0]["file_name"] == "id.png"
    assert docs[0]["mime_type"] == "image/png"


async def test_upload_after_rejection_returns_to_review(client, db, applicant):
    merchant = await applicant(kyb_status=KybStatus.REJECTED)

    await client.post(DOCUMENTS_URL, files={"file": PDF}, data={"document_type": "taxExemptCertificate"})

    await db.refresh(merchant)
    assert merchant.kyb_status == KybStatus.IN_PROGRESS


@pytest.mark.parametrize("files, data, message", [
    ({"file": PDF}, {"document_type": "passport"}, 'Invalid document type "passport"'),
    ({"file": ("notes.txt", b"hello", "text/plain")}, {"document_type": "businessLicense"}, 'File type "text/plain"'),
    (None, {"document_type": "businessLicense"}, "No file provided"),
])
async def test_upload_validation(client, applicant, files, data, message):
    await applicant()

    response = await client.post(DOCUMENTS_URL, files=files, data=data)

    assert response.status_code == 400
    assert message in response.json()["error"]


async def test_sign_agreement_stores_signature(client, db, applicant, outbox, storage_requests):
    merchant = await applicant()
    signature = "data:image/png;base64," + base64.b64encode(b"\x89PNG signature").decode()

    response = await client.post("/api/v1/onboarding/sign-agreement", json={"signatureDataUrl": signature})

    assert response.status_code == 200
    assert "/object/merchant-documents/" in storage_requests[-1][1]
    await db.refresh(merchant)
    assert merchant.agreement_accepted_at is not None
    assert merchant.agreement_signature_path == response.json()["signaturePath"]
    assert outbox[-1]["to"] == [OWNER_EMAIL]


async def test_sign_agreement_requires_png_signature(client, applicant):
    await applicant()

    missing = await client.post("/api/v1/onboarding/sign-agreement", json={})
    garbage = await client.post("/api/v1/onboarding/sign-agreement", json={"signatureDataUrl": "data:image/png;base64,!!!"})

    assert missing.status_code == 400
    assert garbage.status_code == 400
