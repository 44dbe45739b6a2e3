import hashlib
import hmac
import json
import logging

import aiohttp

from errors import SignatureMismatch


logger = logging.getLogger("Webhook")

SIGNATURE_HEADERS = ("X-Hub-Signature", "X-Gawb-Signature")


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def find_signature(headers) -> str | None:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def verify_signature(secret: str | None, body: bytes, signature: str | None):
    """Raise SignatureMismatch when a signature is present and wrong.

    Unsigned requests, or a missing secret, are accepted as is.
    """
    if not signature or not secret:
        return
    expected = sign_body(secret, body).encode()
    if not hmac.compare_digest(expected, signature.encode("utf-8", "surrogateescape")):
        raise SignatureMismatch("invalid signature")


class WebhookSender:
    def __init__(self, secret: str | None = None, timeout: float | None = None):
        self.secret = secret
        self.timeout = timeout

    def encode(self, payload: dict) -> tuple[bytes, dict]:
        body = json.dumps(payload).encode()
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Hub-Signature"] = sign_body(self.secret, body)
        return body, headers

    async def deliver(self, url: str, payload: dict) -> bool:
        """POST once, no retries. Failures are logged and reported as False."""
        body, headers = self.encode(payload)
        kwargs = {}
        if self.timeout:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, data=body, headers=headers, **kwargs) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        logger.error(f"Webhook {url} ответил {resp.status}: {text}")
                        return False
            logger.info(f"Webhook отправлен: {url} ({len(payload.get('entries') or [])} участников)")
            return True
        except Exception as e:
            logger.error(f"Webhook {url} не доставлен: {e}")
            return False
