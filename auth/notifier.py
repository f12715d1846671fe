"""
auth/notifier.py -- Code delivery collaborators.

The AuthService only needs "send this code to this destination"; everything
about the channel lives behind CodeSender. A sender either returns normally
or raises DeliveryError -- the service turns that into a rollback plus a 500.

  LoggingCodeSender -- local/dev. Logs the masked destination and, when
                       verification_logging_enabled is on, the code itself.
  WebhookCodeSender -- POSTs {"to", "body"} to an SMS gateway over requests.

build_code_sender() picks one from Settings.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import requests

from core.config import Settings
from core.masking import mask_phone

logger = logging.getLogger("ideabridge.notify")


class DeliveryError(Exception):
    """The code could not be handed to the delivery channel."""


class CodeSender(ABC):
    @abstractmethod
    def send_sms(self, destination: str, code: str) -> None: ...


class LoggingCodeSender(CodeSender):
    def __init__(self, log_codes: bool = True) -> None:
        self.log_codes = log_codes

    def send_sms(self, destination: str, code: str) -> None:
        if self.log_codes:
            logger.info("SMS verification code for %s: %s", mask_phone(destination), code)
        else:
            logger.info("SMS verification code issued for %s", mask_phone(destination))


class WebhookCodeSender(CodeSender):
    """Deliver codes through an HTTP SMS gateway.

    The gateway receives JSON {"to": "+15555551212", "body": "..."}. Any
    transport error or non-2xx status is a DeliveryError.
    """

    def __init__(self, url: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        # Gateway endpoints are fixed; no reason to follow long redirect chains.
        self._session.max_redirects = 3

    def send_sms(self, destination: str, code: str) -> None:
        body = f"Your IdeaBridge verification code is {code}"
        try:
            resp = self._session.post(self.url, json={"to": destination, "body": body}, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("SMS delivery to %s failed: %s", mask_phone(destination), e)
            raise DeliveryError(f"SMS gateway rejected delivery: {e}") from e
        logger.info("SMS verification code sent to %s", mask_phone(destination))


def build_code_sender(settings: Settings) -> CodeSender:
    if settings.sms_webhook_url:
        return WebhookCodeSender(settings.sms_webhook_url, timeout=settings.sms_webhook_timeout_seconds)
    return LoggingCodeSender(log_codes=settings.verification_logging_enabled)
