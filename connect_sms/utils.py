"""
Utility functions for the SMS service.
"""

import logging
from typing import Mapping

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify the X-Twilio-Signature of a webhook request.

    Args:
        url: Full URL Twilio posted to, including the query string
        params: Form parameters of the request
        signature: Value of the X-Twilio-Signature header
        auth_token: Twilio auth token the signature was computed with

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not auth_token:
        logger.info("Twilio signature verification: missing signature or token")
        return False

    is_valid = RequestValidator(auth_token).validate(url, dict(params), signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
