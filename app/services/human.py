"""reCAPTCHA verification used during registration."""

from __future__ import annotations

import logging

import httpx

from app.config import get_settings
from app.core.errors import ValidationError

logger = logging.getLogger(__name__)


class HumanVerifier:
    """Checks captcha tokens against the reCAPTCHA verification endpoint."""

    def __init__(
        self,
        secret: str | None,
        verify_url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    async def verify(self, token: str | None) -> bool:
        """
        Verify a captcha response token.

        Args:
            token: Token produced by the client-side widget

        Returns:
            True when the endpoint accepted the token

        Raises:
            ValidationError: If verification is enabled and the token is absent or rejected
        """
        if not self.enabled:
            return True
        if not token:
            raise ValidationError("Captcha token is required")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.verify_url,
                    data={"secret": self.secret, "response": token},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError):
            logger.warning("Captcha verification request failed", exc_info=True)
            raise ValidationError("Captcha could not be verified") from None
        if not data.get("success"):
            logger.info("Captcha rejected", extra={"errors": data.get("error-codes")})
            raise ValidationError("Captcha verification failed")
        return True


def get_human_verifier() -> HumanVerifier:
    settings = get_settings()
    return HumanVerifier(settings.recaptcha_secret, settings.recaptcha_verify_url)
