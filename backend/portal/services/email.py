"""
邮件发送（Resend SDK）

未配置 RESEND_API_KEY 时只记录警告并跳过，不影响业务流程。
模板函数返回 (subject, html)。
"""

import asyncio
import html
import logging
from typing import List, Optional, Tuple, Union

import resend
from resend.exceptions import ResendError

from portal.core.config import settings
from portal.services.errors import EmailError

logger = logging.getLogger(__name__)

ADMIN_FROM_ADDRESS = "LabSupply Admin <noreply@peptidetech.co>"


class EmailClient:
    def __init__(self, api_key: str, from_address: str):
        self.api_key = api_key
        self.from_address = from_address

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(
        self,
        to: Union[str, List[str]],
        subject: str,
        html_body: str,
        cc: Optional[List[str]] = None,
        from_address: Optional[str] = None,
    ) -> Optional[str]:
        """发送邮件，返回 Resend 邮件ID；未启用时返回 None"""
        recipients = [to] if isinstance(to, str) else list(to)
        if not self.enabled:
            logger.warning(f"RESEND_API_KEY 未配置，跳过邮件: to={recipients} subject={subject}")
            return None

        params = {
            "from": from_address or self.from_address,
            "to": recipients,
            "subject": subject,
            "html": html_body,
        }
        if cc:
            params["cc"] = cc

        # SDK 为同步调用，放到线程里执行
        resend.api_key = self.api_key
        try:
            result = await asyncio.to_thread(resend.Emails.send, params)
        except ResendError as e:
            raise EmailError(f"Resend error: {e}")
        except OSError as e:
            raise EmailError(f"Resend network error: {e}")

        email_id = result.get("id") if isinstance(result, dict) else None
        logger.info(f"📧 邮件已发送: to={recipients} subject={subject} id={email_id}")
        return email_id

    async def send_safely(self, to: Union[str, List[str]], subject: str, html_body: str, **kwargs) -> bool:
        """通知类邮件：失败只记录日志"""
        try:
            await self.send(to, subject, html_body, **kwargs)
            return True
        except EmailError as e:
            logger.error(f"❌ 邮件发送失败: to={to} subject={subject}: {e}")
            return False


def get_email_client() -> EmailClient:
    return EmailClient(settings.RESEND_API_KEY, settings.EMAIL_FROM)


# ==================== 模板 ====================

def wrap_html(inner: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1.0"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; margin: 0; padding: 0; background-color: #f5f5f5;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background-color: #ffffff; border-radius: 8px; padding: 32px; border: 1px solid #e5e7eb;">
      {inner}
      <hr style="border: none; border-top: 1px solid #e5e7eb; margin: 24px 0;">
      <p style="color: #9ca3af; font-size: 12px; text-align: center;">
        WhiteLabel Peptides Platform<br>This is an automated notification.
      </p>
    </div>
  </div>
</body>
</html>"""


def format_usd(cents: int) -> str:
    return f"${(cents or 0) / 100:,.2f}"


def _button(url: str, label: str) -> str:
    return (
        f'<p><a href="{html.escape(url, quote=True)}" style="display: inline-block; background-color: #111827; '
        f'color: #ffffff; padding: 12px 20px; border-radius: 6px; text-decoration: none;">{html.escape(label)}</a></p>'
    )


def backup_code_email(code: str) -> Tuple[str, str]:
    inner = f"""
      <h2 style="margin-top: 0;">Admin Login Code</h2>
      <p>Use this code to sign in to the admin panel:</p>
      <p style="font-size: 32px; letter-spacing: 6px; font-weight: bold;">{html.escape(code)}</p>
      <p style="color: #6b7280;">This code expires in 10 minutes. If you did not request it, ignore this email.</p>"""
    return "Your Admin Login Code", wrap_html(inner)


def invitation_email(scope: str, accept_url: str, merchant_name: Optional[str] = None, role: str = "") -> Tuple[str, str]:
    if scope == "merchant":
        subject = f"You've been invited to join {merchant_name or 'a merchant team'}"
        heading = f"Join {html.escape(merchant_name or 'your team')}"
    else:
        subject = "You've been invited to the admin team"
        heading = "Join the admin team"
    inner = f"""
      <h2 style="margin-top: 0;">{heading}</h2>
      <p>You have been invited as <strong>{html.escape(role)}</strong>. The invitation expires in 7 days.</p>
      {_button(accept_url, "Accept Invitation")}"""
    return subject, wrap_html(inner)


def withdrawal_request_email(merchant_name: str, merchant_email: str, amount_cents: int, withdrawal_id: str) -> Tuple[str, str]:
    inner = f"""
      <h2 style="margin-top: 0;">Withdrawal Requested</h2>
      <p><strong>{html.escape(merchant_name)}</strong> ({html.escape(merchant_email)}) requested a full withdrawal.</p>
      <p>Amount: <strong>{format_usd(amount_cents)}</strong></p>
      <p>Request ID: {html.escape(withdrawal_id)}</p>"""
    return f"Withdrawal request: {merchant_name} ({format_usd(amount_cents)})", wrap_html(inner)


def invoice_created_email(merchant_name: str, amount_cents: int, due_date: str, payment_url: Optional[str]) -> Tuple[str, str]:
    pay = _button(payment_url, "Pay Invoice") if payment_url else ""
    inner = f"""
      <h2 style="margin-top: 0;">Wallet Funding Invoice</h2>
      <p>Hi {html.escape(merchant_name)}, a wallet funding invoice for <strong>{format_usd(amount_cents)}</strong> was created.</p>
      <p>Due date: {html.escape(due_date)}</p>
      {pay}"""
    return f"Wallet funding invoice - {format_usd(amount_cents)}", wrap_html(inner)


def invoice_paid_email(merchant_name: str, amount_cents: int, balance_cents: int) -> Tuple[str, str]:
    inner = f"""
      <h2 style="margin-top: 0;">Payment Received</h2>
      <p>Hi {html.escape(merchant_name)}, we received your payment of <strong>{format_usd(amount_cents)}</strong>.</p>
      <p>New wallet balance: {format_usd(balance_cents)}</p>"""
    return "Payment received - wallet funded", wrap_html(inner)


def order_awaiting_funds_email(merchant_name: str, order_number: str, required_cents: int, available_cents: int) -> Tuple[str, str]:
    inner = f"""
      <h2 style="margin-top: 0;">Order Awaiting Funds</h2>
      <p>Hi {html.escape(merchant_name)}, order <strong>#{html.escape(order_number)}</strong> is on hold until your wallet is funded.</p>
      <p>Required: {format_usd(required_cents)}<br>Available after compliance reserve: {format_usd(available_cents)}</p>
      {_button(f"{settings.APP_URL}/dashboard/wallet", "Fund Wallet")}"""
    return f"Order #{order_number} is awaiting funds", wrap_html(inner)


def kyb_approved_email(merchant_name: str) -> Tuple[str, str]:
    inner = f"""
      <h2 style="margin-top: 0;">Your Account Is Approved</h2>
      <p>Hi {html.escape(merchant_name)}, your business verification was approved. You can now connect your store and start shipping.</p>
      {_button(f"{settings.APP_URL}/dashboard", "Open Dashboard")}"""
    return "Your account has been approved", wrap_html(inner)


def kyb_rejected_email(merchant_name: str, reason: Optional[str]) -> Tuple[str, str]:
    reason_html = f"<p>Reason: {html.escape(reason)}</p>" if reason else ""
    inner = f"""
      <h2 style="margin-top: 0;">Verification Update</h2>
      <p>Hi {html.escape(merchant_name)}, we could not approve your business verification.</p>
      {reason_html}
      <p>Reply to this email if you have questions.</p>"""
    return "Business verification update", wrap_html(inner)


def agreement_signed_email(merchant_name: str, signed_at: str) -> Tuple[str, str]:
    inner = f"""
      <h2 style="margin-top: 0;">Agreement Signed</h2>
      <p>Hi {html.escape(merchant_name)}, thank you for signing the merchant agreement on {html.escape(signed_at)} (UTC).</p>
      <p>A copy of your signature is stored with your account.</p>"""
    return "Merchant agreement signed", wrap_html(inner)
