from __future__ import annotations

from typing import Optional

import httpx

from sysauth.logging import get_logger

logger = get_logger(__name__)


class CaptchaService:
    """Server-side CAPTCHA check against a siteverify endpoint (Turnstile/hCaptcha style).

    When disabled every call passes. When enabled a missing token, a rejected
    token, or a transport failure all fail closed.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        secret: Optional[str],
        verify_url: str,
        timeout: float = 5.0,
    ) -> None:
        self.enabled = enabled
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout

    async def validate_required(
        self, token: Optional[str], action: str, remote_ip: Optional[str]
    ) -> bool:
        if not self.enabled:
            return True
        if not token or not self.secret:
            logger.warning("captcha_missing", action=action)
            return False
        form = {"secret": self.secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.verify_url, data=form)
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("captcha_verify_failed", action=action, error=str(exc))
            return False
        success = bool(payload.get("success"))
        expected_action = payload.get("action")
        if success and expected_action and expected_action != action:
            logger.warning(
                "captcha_action_mismatch", action=action, reported_action=expected_action
            )
            return False
        if not success:
            logger.info(
                "captcha_rejected", action=action, error_codes=payload.get("error-codes")
            )
        return success
