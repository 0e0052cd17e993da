"""
Merchant Registry - tenant lookup and credential handling.

Every inbound event is resolved to a tenant before anything else touches
it. Credentials are stored encrypted; records written before encryption
existed (``encryption_key_ref IS NULL``) are encrypted the first time they
are read and never written back in plaintext.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.encryption import CredentialCipher, DecryptionError
from app.core.exceptions import CredentialsUnavailable, TenantInactive, TenantNotFound
from app.core.logging import get_logger
from app.db.models.merchant import Merchant

logger = get_logger(__name__)

_CREDENTIAL_FIELDS = ("api_key", "api_url", "master_key", "webhook_secret")


@dataclass(frozen=True)
class MerchantCredentials:
    """Decrypted tenant secrets; never logged"""
    api_key: str | None = field(default=None, repr=False)
    api_url: str | None = None
    master_key: str | None = field(default=None, repr=False)
    webhook_secret: str | None = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MerchantCredentials":
        return cls(**{name: data.get(name) or None for name in _CREDENTIAL_FIELDS})

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class TenantProfile:
    store_id: str
    merchant_name: str | None
    credentials: MerchantCredentials
    is_active: bool = True
    requires_signature: bool = False
    auto_dispatch_enabled: bool = True
    pickup_address: str | None = None
    pickup_phone: str | None = None
    pickup_business_name: str | None = None


def _parse_legacy_credentials(raw: str) -> dict[str, Any]:
    """Legacy rows hold either a JSON object or a bare API key"""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return {"api_key": raw}
    if isinstance(data, dict):
        return data
    return {"api_key": raw}


class MerchantRegistry:
    """Tenant resolution against the merchants table"""

    def __init__(self, db: AsyncSession, cipher: CredentialCipher | None):
        self.db = db
        self.cipher = cipher

    async def _get_merchant(self, store_id: str) -> Merchant | None:
        result = await self.db.execute(select(Merchant).where(Merchant.store_id == store_id))
        return result.scalar_one_or_none()

    async def resolve(self, store_id: str) -> TenantProfile:
        """
        Resolve an active tenant with decrypted credentials.

        Raises:
            TenantNotFound: no merchant registered for ``store_id``
            TenantInactive: merchant exists but is disabled
            CredentialsUnavailable: stored credentials cannot be decrypted
        """
        profile = await self.get_profile(store_id)
        if profile is None:
            raise TenantNotFound(store_id)
        if not profile.is_active:
            raise TenantInactive(store_id)
        return profile

    async def get_profile(self, store_id: str) -> TenantProfile | None:
        """Like ``resolve`` but returns None for unknown tenants and ignores is_active"""
        merchant = await self._get_merchant(store_id)
        if merchant is None:
            return None
        credentials = await self._read_credentials(merchant)
        return TenantProfile(
            store_id=merchant.store_id,
            merchant_name=merchant.merchant_name,
            credentials=credentials,
            is_active=merchant.is_active,
            requires_signature=merchant.requires_signature,
            auto_dispatch_enabled=merchant.auto_dispatch_enabled,
            pickup_address=merchant.pickup_address,
            pickup_phone=merchant.pickup_phone,
            pickup_business_name=merchant.pickup_business_name,
        )

    async def _read_credentials(self, merchant: Merchant) -> MerchantCredentials:
        if merchant.is_encrypted:
            if self.cipher is None:
                raise CredentialsUnavailable(merchant.store_id, "encryption key is not configured")
            try:
                data = self.cipher.decrypt_json(merchant.credentials)
            except (DecryptionError, ValueError) as e:
                logger.error(
                    "Failed to decrypt merchant credentials",
                    extra_data={
                        "store_id": merchant.store_id,
                        "key_ref": merchant.encryption_key_ref,
                        "error": str(e),
                    },
                )
                raise CredentialsUnavailable(merchant.store_id, "decryption failed") from e
            return MerchantCredentials.from_dict(data)

        data = _parse_legacy_credentials(merchant.credentials)
        if self.cipher is None:
            logger.warning(
                "Legacy plaintext credentials left unencrypted, no encryption key configured",
                extra_data={"store_id": merchant.store_id},
            )
            return MerchantCredentials.from_dict(data)

        # migrate-on-read: הרשומה מוצפנת עכשיו ולא תחזור לטקסט גלוי
        merchant.credentials = self.cipher.encrypt_json(data)
        merchant.encryption_key_ref = self.cipher.key_id
        await self.db.commit()
        logger.info(
            "Legacy merchant credentials encrypted",
            extra_data={"store_id": merchant.store_id, "key_ref": self.cipher.key_id},
        )
        return MerchantCredentials.from_dict(data)

    async def upsert_merchant(
        self,
        store_id: str,
        *,
        credentials: MerchantCredentials | dict[str, Any],
        merchant_name: str | None = None,
        is_active: bool = True,
        requires_signature: bool = False,
        auto_dispatch_enabled: bool = True,
        pickup_address: str | None = None,
        pickup_phone: str | None = None,
        pickup_business_name: str | None = None,
    ) -> Merchant:
        """Create or replace a merchant; credentials are always written encrypted"""
        if self.cipher is None:
            raise CredentialsUnavailable(store_id, "encryption key is not configured")
        if isinstance(credentials, dict):
            credentials = MerchantCredentials.from_dict(credentials)

        merchant = await self._get_merchant(store_id)
        if merchant is None:
            merchant = Merchant(store_id=store_id)
            self.db.add(merchant)

        merchant.merchant_name = merchant_name or merchant.merchant_name or f"Merchant {store_id}"
        merchant.credentials = self.cipher.encrypt_json(credentials.to_dict())
        merchant.encryption_key_ref = self.cipher.key_id
        merchant.is_active = is_active
        merchant.requires_signature = requires_signature
        merchant.auto_dispatch_enabled = auto_dispatch_enabled
        merchant.pickup_address = pickup_address
        merchant.pickup_phone = pickup_phone
        merchant.pickup_business_name = pickup_business_name
        await self.db.commit()

        logger.info(
            "Merchant configured",
            extra_data={"store_id": store_id, "is_active": is_active},
        )
        return merchant

    async def list_active(self) -> list[Merchant]:
        result = await self.db.execute(
            select(Merchant).where(Merchant.is_active.is_(True)).order_by(Merchant.store_id)
        )
        return list(result.scalars().all())

    async def load_from_json(self, merchants_json: str) -> int:
        """
        Upsert merchants from a JSON list (MERCHANTS_JSON).

        Entries without a store_id are skipped with a warning; a list that
        is not valid JSON raises ValueError so startup fails loudly.
        """
        if not merchants_json or not merchants_json.strip():
            return 0
        entries = json.loads(merchants_json)
        if not isinstance(entries, list):
            raise ValueError("MERCHANTS_JSON must be a JSON list")

        loaded = 0
        for entry in entries:
            store_id = str(entry.get("store_id") or "").strip() if isinstance(entry, dict) else ""
            if not store_id:
                logger.warning("Skipping merchant entry without store_id")
                continue
            await self.upsert_merchant(
                store_id,
                credentials=MerchantCredentials.from_dict(entry),
                merchant_name=entry.get("merchant_name"),
                is_active=entry.get("is_active", True) is not False,
                requires_signature=bool(entry.get("requires_signature", False)),
                auto_dispatch_enabled=entry.get("auto_dispatch_enabled", True) is not False,
                pickup_address=entry.get("pickup_address"),
                pickup_phone=entry.get("pickup_phone"),
                pickup_business_name=entry.get("pickup_business_name"),
            )
            loaded += 1
        return loaded
