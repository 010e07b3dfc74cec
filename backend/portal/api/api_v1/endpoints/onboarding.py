"""
商户入驻：KYB 资料上传、签署商户协议

资料存放在 merchant-uploads/{user_id}/kyb/{document_type}.{ext}，每种类型只保留最新一份；
上传任意资料后 KYB 状态进入 in_progress 等待审核。
"""

import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import get_db, require_user
from portal.models.merchant import KybDocument, KybStatus, Merchant
from portal.schemas.merchant import SignAgreementRequest
from portal.services.audit import client_ip, create_audit_event
from portal.services.email import EmailClient, agreement_signed_email, get_email_client
from portal.services.errors import SupabaseError
from portal.services.supabase import (
    MERCHANT_DOCUMENTS_BUCKET,
    MERCHANT_UPLOADS_BUCKET,
    AuthUser,
    SupabaseStorageClient,
    get_storage_client,
)

logger = logging.getLogger(__name__)

router = APIRouter()

VALID_DOC_TYPES = (
    "businessLicense",
    "articlesOfIncorporation",
    "taxExemptCertificate",
    "researchCredentials",
    "governmentId",
)
MAX_FILE_SIZE = 10 * 1024 * 1024
ALLOWED_MIME_TYPES = ("application/pdf", "image/jpeg", "image/png", "image/webp")
SIGNATURE_PREFIX = "data:image/png;base64,"


def build_document_response(doc: KybDocument) -> dict:
    return {
        "id": doc.id,
        "document_type": doc.document_type,
        "file_name": doc.file_name,
        "storage_path": doc.storage_path,
        "file_size_bytes": doc.file_size_bytes,
        "mime_type": doc.mime_type,
        "status": doc.status,
        "created_at": doc.created_at,
    }


async def _merchant_for_user(db: AsyncSession, user: AuthUser) -> Optional[Merchant]:
    result = await db.execute(select(Merchant).where(Merchant.user_id == user.id))
    return result.scalars().first()


@router.get("/documents")
async def list_documents(
    *,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> Any:
    docs = (await db.execute(
        select(KybDocument).where(KybDocument.user_id == user.id).order_by(KybDocument.created_at.asc())
    )).scalars().all()
    return {"data": [build_document_response(d) for d in docs]}


@router.post("/documents", status_code=201)
async def upload_document(
    *,
    request: Request,
    file: Optional[UploadFile] = File(None),
    document_type: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_user),
    storage: SupabaseStorageClient = Depends(get_storage_client),
) -> Any:
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file provided. Please select a file to upload.")
    if document_type not in VALID_DOC_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f'Invalid document type "{document_type}". Must be one of: {", ".join(VALID_DOC_TYPES)}',
        )

    content = await file.read()
    if len(content) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File is too large ({len(content) / 1024 / 1024:.1f}MB). Maximum file size is 10MB.",
        )
    if file.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f'File type "{file.content_type}" is not supported. Please upload a PDF, JPEG, PNG or WebP file.',
        )

    ext = file.filename.rsplit(".", 1)[-1].lower() if "." in file.filename else "pdf"
    path = f"{user.id}/kyb/{document_type}.{ext}"
    try:
        await storage.upload(MERCHANT_UPLOADS_BUCKET, path, content, file.content_type, upsert=True)
    except SupabaseError as e:
        logger.error(f"❌ KYB 资料上传失败 {path}: {e}")
        raise HTTPException(status_code=500, detail="Failed to upload file to storage. Please try again or use a smaller file.")

    merchant = await _merchant_for_user(db, user)
    existing = await db.execute(
        select(KybDocument).where(KybDocument.user_id == user.id, KybDocument.document_type == document_type)
    )
    doc = existing.scalars().first()
    if not doc:
        doc = KybDocument(user_id=user.id, document_type=document_type)
        db.add(doc)
    doc.merchant_id = merchant.id if merchant else None
    doc.file_name = file.filename
    doc.storage_path = path
    doc.file_size_bytes = len(content)
    doc.mime_type = file.content_type
    doc.status = "pending"

    if merchant and merchant.kyb_status in (KybStatus.NOT_STARTED, KybStatus.REJECTED):
        merchant.kyb_status = KybStatus.IN_PROGRESS
    await db.flush()

    await create_audit_event(
        db, "kyb.document_uploaded", "kyb_document", doc.id,
        merchant_id=merchant.id if merchant else None,
        actor_user_id=user.id,
        actor_email=user.email,
        metadata={"document_type": document_type, "file_name": file.filename, "size": len(content)},
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"📄 KYB 资料已上传: user={user.id} type={document_type}")
    return {"data": build_document_response(doc)}


@router.post("/sign-agreement")
async def sign_agreement(
    *,
    request: Request,
    payload: SignAgreementRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_user),
    storage: SupabaseStorageClient = Depends(get_storage_client),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    """保存签名图片并记录协议接受时间，邮件发送确认"""
    data_url = payload.signatureDataUrl or ""
    if not data_url.startswith(SIGNATURE_PREFIX):
        raise HTTPException(status_code=400, detail="A PNG signature is required")
    try:
        signature = base64.b64decode(data_url[len(SIGNATURE_PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Signature image is not valid base64")
    if not signature:
        raise HTTPException(status_code=400, detail="A PNG signature is required")

    merchant = await _merchant_for_user(db, user)
    if not merchant:
        raise HTTPException(status_code=404, detail="Merchant not found")

    now = datetime.utcnow()
    path = f"{user.id}/agreement/signature-{now.strftime('%Y%m%d%H%M%S')}.png"
    try:
        await storage.upload(MERCHANT_DOCUMENTS_BUCKET, path, signature, "image/png", upsert=True)
    except SupabaseError as e:
        logger.error(f"❌ 签名上传失败 {path}: {e}")
        raise HTTPException(status_code=500, detail="Failed to store signature. Please try again.")

    merchant.agreement_accepted_at = now
    merchant.terms_accepted_at = now
    merchant.agreement_signature_path = path
    await create_audit_event(
        db, "merchant.agreement_signed", "merchant", merchant.id,
        merchant_id=merchant.id,
        actor_user_id=user.id,
        actor_email=user.email,
        metadata={
            "signature_path": path,
            "merchant_name": payload.merchantName,
            "merchant_email": payload.merchantEmail,
        },
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"✍️ 商户协议已签署: merchant={merchant.id}")

    signed_at = now.strftime("%Y-%m-%d %H:%M")
    subject, body = agreement_signed_email(payload.merchantName or merchant.display_name, signed_at)
    await email_client.send_safely(payload.merchantEmail or merchant.email, subject, body)

    return {"success": True, "signedAt": now.isoformat(), "signaturePath": path}
