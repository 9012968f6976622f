# order confirmation sms
import logging
import os

import africastalking

from db import format_amount

logger = logging.getLogger(__name__)

AFRICASTALKING_USERNAME = os.getenv("AFRICASTALKING_USERNAME", "")
AFRICASTALKING_API_KEY = os.getenv("AFRICASTALKING_API_KEY", "")
AFRICASTALKING_SENDER_ID = os.getenv("AFRICASTALKING_SENDER_ID", "")

if AFRICASTALKING_USERNAME and AFRICASTALKING_API_KEY:
    africastalking.initialize(
        username=AFRICASTALKING_USERNAME,
        api_key=AFRICASTALKING_API_KEY,
    )
    sms = africastalking.SMS
else:
    sms = None


def send_sms(phone, message) -> bool:
    if sms is None:
        logger.info("[SMS] Not configured: missing AFRICASTALKING_USERNAME or AFRICASTALKING_API_KEY")
        return False
    if not phone:
        return False
    sender = AFRICASTALKING_SENDER_ID or None
    try:
        response = sms.send(message, [phone], sender)
    except Exception:
        # Notifications never block checkout.
        logger.exception("[SMS] Failed to send to %s", phone)
        return False
    logger.info("[SMS] Sent to %s: %s", phone, response)
    return True


def send_order_confirmation_sms(phone, order_id, total, currency="BHD") -> bool:
    short_id = str(order_id)[:8].upper()
    message = (
        f"Thank you for your order #{short_id}. "
        f"Total: {format_amount(total)} {currency}. We will notify you when it ships."
    )
    return send_sms(phone, message)
