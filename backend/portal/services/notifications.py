"""商户站内通知（邮件由调用方另行发送）"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from portal.models.system import Notification

logger = logging.getLogger(__name__)


async def create_notification(
    db: AsyncSession,
    merchant_id: str,
    notification_type: str,
    title: str,
    message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Notification:
    notification = Notification(
        merchant_id=merchant_id,
        type=notification_type,
        title=title,
        message=message,
        extra_data=metadata,
    )
    db.add(notification)
    logger.info(f"🔔 通知: merchant={merchant_id} type={notification_type} title={title}")
    return notification
