import io
import logging
import smtplib
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

import qrcode

from app.config import Settings
from app.services.events import ClaimEmailEvent
from app.utils.errors import DeliveryError

logger = logging.getLogger(__name__)


def render_qr_png(code: str) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(code)
    qr.make(fit=True)

    buffer = io.BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buffer, format="PNG")
    return buffer.getvalue()


def claim_confirmation_html(event: ClaimEmailEvent) -> str:
    donor = escape(event.donor_name)
    if event.donor_email:
        donor += f" ({escape(event.donor_email)})"

    return f"""
    <html>
    <body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
        <h2>Food Claim Confirmation</h2>
        <p>Dear {escape(event.receiver_name)},</p>
        <p>Thank you for claiming the food donation. Here are your claim details:</p>
        <ul>
            <li><strong>Item:</strong> {escape(event.listing_title)}</li>
            <li><strong>Quantity:</strong> {event.quantity:g} {escape(event.unit)}</li>
            <li><strong>Pickup before:</strong> {event.available_until:%Y-%m-%d %H:%M} UTC</li>
            <li><strong>Location:</strong> {escape(event.address)}</li>
            <li><strong>Donor:</strong> {donor}</li>
        </ul>
        <p>Show the attached QR code to the donor at pickup. Your code is
        <strong>{escape(event.qr_code)}</strong>.</p>
        <p>The code is valid until {event.expires_at:%Y-%m-%d %H:%M} UTC and can be used once.</p>
    </body>
    </html>
    """


class EmailSender:
    def __init__(self, settings: Settings):
        self._host = settings.smtp_host
        self._port = settings.smtp_port
        self._username = settings.smtp_username
        self._password = settings.smtp_password
        self._sender = settings.email_from
        self.enabled = settings.email_enabled

    def build_claim_confirmation(self, event: ClaimEmailEvent) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self._sender
        msg["To"] = event.to
        msg["Subject"] = f"Your pickup code for {event.listing_title}"

        msg.attach(MIMEText(claim_confirmation_html(event), "html"))

        qr_attachment = MIMEImage(render_qr_png(event.qr_code), _subtype="png")
        qr_attachment.add_header("Content-Disposition", "attachment", filename="pickup-qr.png")
        msg.attach(qr_attachment)
        return msg

    def send_claim_confirmation(self, event: ClaimEmailEvent) -> bool:
        if not self.enabled:
            logger.info("SMTP not configured, skipping claim email")
            return False

        msg = self.build_claim_confirmation(event)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=10) as server:
                server.starttls()
                if self._username:
                    server.login(self._username, self._password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP delivery to {event.to} failed: {e}") from e

        logger.info("Claim confirmation email sent")
        return True
