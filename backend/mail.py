from __future__ import annotations
import html
import smtplib
from email.message import EmailMessage
from typing import Any

import structlog
from starlette.concurrency import run_in_threadpool

from config import get_settings

logger = structlog.get_logger(__name__)


def order_confirmation_content(username: str, items: list[dict[str, Any]], total: float) -> dict[str, Any]:
    return {
        "name": username,
        "intro": "Your order has been processed successfully.",
        "table": [
            {"item": item.get("name"), "quantity": item.get("quantity"), "price": item.get("price")}
            for item in items
        ],
        "summary": f"Order total: {get_settings().CURRENCY} {total:.2f}",
        "outro": "Need help, or have questions? Just reply to this email, we'd love to help.",
    }


def render_text(content: dict[str, Any]) -> str:
    lines = [f"Hi {content.get('name', '')},", "", content.get("intro", ""), ""]
    for row in content.get("table", []):
        lines.append(f"- {row['item']} x{row['quantity']} @ {row['price']}")
    if content.get("summary"):
        lines += ["", content["summary"]]
    lines += ["", content.get("outro", "")]
    return "\n".join(lines)


def render_html(content: dict[str, Any]) -> str:
    rows = "".join(
        f"<tr><td>{html.escape(str(row['item']))}</td><td>{row['quantity']}</td><td>{row['price']}</td></tr>"
        for row in content.get("table", [])
    )
    return (
        f"<p>Hi {html.escape(content.get('name', ''))},</p>"
        f"<p>{html.escape(content.get('intro', ''))}</p>"
        f"<table><tr><th>Item</th><th>Quantity</th><th>Price</th></tr>{rows}</table>"
        f"<p>{html.escape(content.get('summary', ''))}</p>"
        f"<p>{html.escape(content.get('outro', ''))}</p>"
    )


def _deliver(message: EmailMessage) -> None:
    settings = get_settings()
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USER:
            smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        smtp.send_message(message)


async def send_email(to: str, subject: str, content: dict[str, Any]) -> bool:
    """Send an email. Delivery problems are logged and reported as False, never raised."""
    settings = get_settings()
    message = EmailMessage()
    message["From"] = settings.MAIL_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(render_text(content))
    message.add_alternative(render_html(content), subtype="html")

    try:
        await run_in_threadpool(_deliver, message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("email_failed", to=to, subject=subject, error=str(exc))
        return False
    logger.info("email_sent", to=to, subject=subject)
    return True
