import smtplib

import mail
from mail import order_confirmation_content, render_html, render_text, send_email


def test_order_confirmation_content():
    items = [{"name": "Lamp <deluxe>", "quantity": 2, "price": 40.0}]
    content = order_confirmation_content("alice", items, 80)

    assert content["table"] == [{"item": "Lamp <deluxe>", "quantity": 2, "price": 40.0}]
    assert content["summary"] == "Order total: INR 80.00"
    assert "- Lamp <deluxe> x2 @ 40.0" in render_text(content)
    assert "Lamp &lt;deluxe&gt;" in render_html(content)


async def test_send_email_delivers(monkeypatch):
    delivered = []
    monkeypatch.setattr(mail, "_deliver", delivered.append)

    assert await send_email("alice@example.com", "Order confirmed", {"name": "alice"}) is True
    message = delivered[0]
    assert message["To"] == "alice@example.com"
    assert message["Subject"] == "Order confirmed"
    assert message.is_multipart()


async def test_send_email_failure_is_reported(monkeypatch):
    def broken(message):
        raise smtplib.SMTPServerDisconnected("gone")

    monkeypatch.setattr(mail, "_deliver", broken)
    assert await send_email("alice@example.com", "Order confirmed", {"name": "alice"}) is False
