"""E-mail notifications for contract events.

Messages go out through the Resend HTTP API (httpx) with a short retry.
Unlike the audit log, a failed send raises: the caller is an outbox handler
that records the failure and retries later, so the contract transition that
produced the notification is never rolled back.
"""

import logging
from decimal import Decimal

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from coffee_contracts.core.config import settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """The e-mail provider refused or could not be reached.

    ``delivered`` lists the recipients that did get their e-mail before the failure.
    """

    def __init__(self, message: str, delivered: list[str] | None = None):
        super().__init__(message)
        self.delivered = list(delivered or [])


_SIGNED_SUBJECTS = {
    "en": "Contract {contract_number} approved - FiveHub",
    "ar": "تم اعتماد العقد {contract_number} - FiveHub",
}

_SIGNED_BODIES = {
    "en": {
        "buyer": (
            "<p>Hello {name},</p>"
            "<p>The platform has signed contract <strong>{contract_number}</strong>.</p>"
            "<p>Next step: transfer <strong>{net_amount} {currency}</strong> to the seller "
            "and upload the transfer receipt to complete the contract.</p>"
            '<p><a href="{link}">View contract</a></p>'
        ),
        "seller": (
            "<p>Hello {name},</p>"
            "<p>The platform has signed contract <strong>{contract_number}</strong>.</p>"
            "<p>The buyer will now transfer <strong>{net_amount} {currency}</strong> to you. "
            "You will be notified once the payment is confirmed.</p>"
            '<p><a href="{link}">View contract</a></p>'
        ),
    },
    "ar": {
        "buyer": (
            '<div dir="rtl"><p>مرحباً {name}،</p>'
            "<p>اعتمدت المنصة العقد رقم <strong>{contract_number}</strong>.</p>"
            "<p>الخطوة التالية: يرجى تحويل مبلغ <strong>{net_amount} {currency}</strong> "
            "إلى حساب البائع ورفع إيصال التحويل لإتمام العقد.</p>"
            '<p><a href="{link}">عرض تفاصيل العقد</a></p></div>'
        ),
        "seller": (
            '<div dir="rtl"><p>مرحباً {name}،</p>'
            "<p>اعتمدت المنصة العقد رقم <strong>{contract_number}</strong>.</p>"
            "<p>سيقوم المشتري بتحويل مبلغ <strong>{net_amount} {currency}</strong> إلى حسابك.</p>"
            '<p><a href="{link}">عرض تفاصيل العقد</a></p></div>'
        ),
    },
}


def _get_locale(user) -> str:
    locale = getattr(user, "locale", "en") or "en"
    return locale if locale in _SIGNED_BODIES else "en"


def contract_link(contract_id: int) -> str:
    return f"{settings.public_web_url.rstrip('/')}/contract/{contract_id}"


@retry(
    retry=retry_if_exception_type((httpx.TransportError, NotificationError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)
async def _send_email(to: str, subject: str, html: str) -> bool:
    """Send one e-mail via Resend with retry. Returns False when mail is not configured."""
    if not settings.resend_api_key:
        logger.warning("RESEND_API_KEY not set, skipping e-mail to %s", to)
        return False

    payload = {"from": settings.mail_from, "to": [to], "subject": subject, "html": html}
    headers = {"Authorization": f"Bearer {settings.resend_api_key}"}
    async with httpx.AsyncClient(timeout=10) as client:
        resp = await client.post(settings.resend_api_url, json=payload, headers=headers)
    if resp.status_code >= 300:
        raise NotificationError(f"Resend returned {resp.status_code}: {resp.text}")
    return True


def build_signed_messages(contract) -> list[tuple[str, str, str]]:
    """Return (recipient, subject, html) for buyer and seller of a platform-signed contract."""
    net_amount = Decimal(contract.seller_net_amount)
    messages = []
    for user, party in ((contract.buyer, "buyer"), (contract.seller, "seller")):
        if user is None or not user.email:
            logger.warning("Contract %s has no %s e-mail, skipping", contract.id, party)
            continue
        lang = _get_locale(user)
        subject = _SIGNED_SUBJECTS[lang].format(contract_number=contract.contract_number)
        html = _SIGNED_BODIES[lang][party].format(
            name=user.display_name,
            contract_number=contract.contract_number,
            net_amount=f"{net_amount:,.2f}",
            currency=contract.currency,
            link=contract_link(contract.id),
        )
        messages.append((user.email, subject, html))
    return messages


async def notify_contract_signed(contract, skip: list[str] | tuple = ()) -> int:
    """Tell buyer and seller that the platform signed; returns the number of e-mails sent.

    Recipients in ``skip`` were reached on an earlier attempt and are not mailed again.
    Every recipient is tried; if any send fails after retries, NotificationError is
    raised carrying all recipients reached so far.
    """
    delivered = list(skip)
    errors = []
    sent = 0
    for to, subject, html in build_signed_messages(contract):
        if to in delivered:
            continue
        try:
            if await _send_email(to, subject, html):
                delivered.append(to)
                sent += 1
        except (httpx.HTTPError, NotificationError) as exc:
            logger.warning("Contract %s e-mail to %s failed: %s", contract.id, to, exc)
            errors.append(f"{to}: {exc}")
    if errors:
        raise NotificationError("; ".join(errors), delivered=delivered)
    logger.info(
        "Contract signed notification dispatched",
        extra={"contract_id": contract.id, "emails_sent": sent},
    )
    return sent
