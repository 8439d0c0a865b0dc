"""Merchant registry: API key issuance, authentication and webhook secrets."""

import hashlib
import secrets
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import select, update

from linkpay.common.errors import AuthError, NotFoundError, ValidationError
from linkpay.common.logging import logger
from linkpay.common.timeutils import Clock, utcnow
from linkpay.services.merchant_api.models import Merchant, MerchantApiKey

API_KEY_PREFIX = "pm_live_"
ONE_TIME_DISCLOSURE = "Store this API key securely. It will only be shown once."


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _new_api_key() -> str:
    return f"{API_KEY_PREFIX}{uuid4().hex}"


def _new_webhook_secret() -> str:
    return f"whsec_{secrets.token_hex(32)}"


@dataclass(frozen=True)
class IssuedApiKey:
    api_key: str
    merchant_id: str
    webhook_secret: str


class MerchantRegistry:
    """Maps API keys to merchant identities.

    Only the SHA-256 of each key is stored, so a key can be checked but never
    read back.
    """

    def __init__(self, session_factory, clock: Clock = utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def _add_key(self, db, merchant_id: str) -> str:
        api_key = _new_api_key()
        db.add(
            MerchantApiKey(
                key_hash=hash_api_key(api_key),
                merchant_id=merchant_id,
                key_prefix=api_key[:12],
                created_at=self.clock(),
            )
        )
        return api_key

    def issue_api_key(self, wallet_address: str | None, merchant_name: str | None) -> IssuedApiKey:
        """Create a merchant with a fresh key and webhook secret."""

        wallet_address = (wallet_address or "").strip()
        merchant_name = (merchant_name or "").strip()
        if not wallet_address or not merchant_name:
            raise ValidationError("walletAddress and merchantName required")

        with self.session_factory() as db:
            merchant = Merchant(
                merchant_id=str(uuid4()),
                wallet_address=wallet_address,
                merchant_name=merchant_name,
                webhook_secret=_new_webhook_secret(),
                created_at=self.clock(),
            )
            db.add(merchant)
            db.flush()
            api_key = self._add_key(db, merchant.merchant_id)
            db.commit()

        logger.info(
            "api_key_issued merchant_id=%s merchant_name=%s wallet=%s",
            merchant.merchant_id,
            merchant_name,
            wallet_address,
        )
        return IssuedApiKey(api_key=api_key, merchant_id=merchant.merchant_id, webhook_secret=merchant.webhook_secret)

    def authenticate(self, api_key: str | None) -> str:
        """Resolve an API key to its merchant id.

        A missing key and a bad key are reported with different kinds.
        """

        if not api_key:
            raise AuthError("API key required", kind="unauthorized")
        with self.session_factory() as db:
            record = db.get(MerchantApiKey, hash_api_key(api_key))
        if record is None or record.revoked_at is not None:
            raise AuthError("Invalid API key", kind="invalid_api_key")
        return record.merchant_id

    def regenerate_api_key(self, merchant_id: str) -> str:
        """Revoke every active key of the merchant and issue a new one."""

        with self.session_factory() as db:
            if db.get(Merchant, merchant_id) is None:
                raise NotFoundError("Merchant not found")
            db.execute(
                update(MerchantApiKey)
                .where(MerchantApiKey.merchant_id == merchant_id, MerchantApiKey.revoked_at.is_(None))
                .values(revoked_at=self.clock())
            )
            api_key = self._add_key(db, merchant_id)
            db.commit()
        logger.info("api_key_regenerated merchant_id=%s", merchant_id)
        return api_key

    def rotate_webhook_secret(self, merchant_id: str) -> str:
        """Replace the signing secret used for this merchant's future webhooks."""

        with self.session_factory() as db:
            merchant = db.get(Merchant, merchant_id)
            if merchant is None:
                raise NotFoundError("Merchant not found")
            merchant.webhook_secret = _new_webhook_secret()
            merchant.secret_rotated_at = self.clock()
            db.commit()
        logger.info("webhook_secret_rotated merchant_id=%s", merchant_id)
        return merchant.webhook_secret

    def webhook_secret(self, db, merchant_id: str) -> str:
        secret = db.execute(
            select(Merchant.webhook_secret).where(Merchant.merchant_id == merchant_id)
        ).scalar_one_or_none()
        if secret is None:
            raise NotFoundError("Merchant not found")
        return secret
