"""Credential store. Tokens are encrypted on the way in and decrypted on the way out."""

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.application.dtos.credential import (
    CredentialCreate,
    CredentialKey,
    CredentialResult,
    TokenUpdate,
)
from crm_sync.domain.enums import OAuthStatus, Provider
from crm_sync.infrastructure.external.oauth.encryption import CredentialEncryptor
from crm_sync.infrastructure.persistence.models.credential import OAuthCredential
from crm_sync.infrastructure.persistence.repositories.base import BaseRepository
from crm_sync.shared.telemetry.logging import get_logger
from crm_sync.shared.utils.datetime import ensure_utc, utc_now

logger = get_logger(__name__)


class CredentialRepository(BaseRepository[OAuthCredential]):
    """Atomic read/update of credentials.

    Token writes are single UPDATE statements guarded by the stored expiry,
    so concurrent refreshes resolve last-writer-wins on a monotonically
    increasing expiry and fields are never merged.
    """

    def __init__(self, db: AsyncSession, encryptor: CredentialEncryptor) -> None:
        super().__init__(db, OAuthCredential)
        self.encryptor = encryptor

    def _to_result(self, row: OAuthCredential) -> CredentialResult:
        return CredentialResult(
            id=row.id,
            owner_id=row.owner_id,
            provider=Provider(row.provider),
            email=row.email,
            access_token=self.encryptor.decrypt(row.access_token_encrypted),
            refresh_token=self.encryptor.decrypt_optional(row.refresh_token_encrypted),
            expires_at=ensure_utc(row.expires_at),
            scopes=tuple(row.scopes or ()),
            oauth_status=OAuthStatus(row.oauth_status),
            updated_at=ensure_utc(row.updated_at),
            provider_account_id=row.provider_account_id,
            last_auth_error=row.last_auth_error,
            refresh_failure_count=row.refresh_failure_count,
            token_refresh_count=row.token_refresh_count,
            last_refreshed_at=ensure_utc(row.last_refreshed_at),
            last_sync_at=ensure_utc(row.last_sync_at),
            webhook_subscription_id=row.webhook_subscription_id,
            webhook_expires_at=ensure_utc(row.webhook_expires_at),
            is_active=row.is_active,
        )

    async def _reload(self, credential_id: str) -> CredentialResult:
        return self._to_result(await self._get_or_raise(credential_id, fresh=True))

    async def get_by_id(self, credential_id: str) -> CredentialResult | None:
        row = await self._get(credential_id)
        return self._to_result(row) if row else None

    async def _get_row_by_key(
        self, key: CredentialKey, *, for_update: bool = False
    ) -> OAuthCredential | None:
        stmt = select(OAuthCredential).where(
            OAuthCredential.owner_id == key.owner_id,
            OAuthCredential.provider == key.provider.value,
            OAuthCredential.email == key.email,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_key(
        self, key: CredentialKey, *, for_update: bool = False
    ) -> CredentialResult | None:
        row = await self._get_row_by_key(key, for_update=for_update)
        return self._to_result(row) if row else None

    async def get_by_account_ref(
        self, provider: Provider, account_ref: str
    ) -> CredentialResult | None:
        stmt = (
            select(OAuthCredential)
            .where(
                OAuthCredential.provider == provider.value,
                OAuthCredential.is_active.is_(True),
                or_(
                    OAuthCredential.provider_account_id == account_ref,
                    OAuthCredential.webhook_subscription_id == account_ref,
                ),
            )
            .order_by(OAuthCredential.updated_at.desc())
            .limit(1)
        )
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        return self._to_result(row) if row else None

    async def list_by_owner(self, owner_id: str) -> list[CredentialResult]:
        stmt = (
            select(OAuthCredential)
            .where(OAuthCredential.owner_id == owner_id)
            .order_by(OAuthCredential.created_at)
        )
        return [self._to_result(r) for r in (await self.db.execute(stmt)).scalars()]

    async def list_syncable(self) -> list[CredentialResult]:
        stmt = (
            select(OAuthCredential)
            .where(
                OAuthCredential.is_active.is_(True),
                OAuthCredential.oauth_status != OAuthStatus.REAUTH_REQUIRED.value,
            )
            .order_by(OAuthCredential.last_sync_at.asc().nulls_first())
        )
        return [self._to_result(r) for r in (await self.db.execute(stmt)).scalars()]

    def _apply_connect(self, row: OAuthCredential, data: CredentialCreate) -> None:
        row.access_token_encrypted = self.encryptor.encrypt(data.access_token)
        if data.refresh_token:
            row.refresh_token_encrypted = self.encryptor.encrypt(data.refresh_token)
        row.expires_at = data.expires_at
        row.scopes = list(data.scopes)
        if data.provider_account_id:
            row.provider_account_id = data.provider_account_id
        row.oauth_status = OAuthStatus.ACTIVE.value
        row.last_auth_error = None
        row.refresh_failure_count = 0
        row.is_active = True

    async def upsert(self, data: CredentialCreate) -> CredentialResult:
        key = CredentialKey(data.owner_id, data.provider, data.email)
        row = await self._get_row_by_key(key, for_update=True)
        if row is None:
            row = OAuthCredential(
                owner_id=data.owner_id,
                provider=data.provider.value,
                email=data.email,
                refresh_token_encrypted=None,
            )
            self._apply_connect(row, data)
            try:
                async with self.db.begin_nested():
                    self.db.add(row)
                    await self.db.flush()
            except IntegrityError:
                # connected concurrently; fall through to update in place
                row = await self._get_row_by_key(key, for_update=True)
                if row is None:
                    raise
                self._apply_connect(row, data)
        else:
            self._apply_connect(row, data)
        return self._to_result(await self._save(row))

    async def update_tokens(
        self, credential_id: str, update_data: TokenUpdate, refreshed_at: datetime
    ) -> CredentialResult:
        values: dict = {
            "access_token_encrypted": self.encryptor.encrypt(update_data.access_token),
            "expires_at": update_data.expires_at,
            "oauth_status": OAuthStatus.ACTIVE.value,
            "last_auth_error": None,
            "refresh_failure_count": 0,
            "token_refresh_count": OAuthCredential.token_refresh_count + 1,
            "last_refreshed_at": refreshed_at,
            "updated_at": utc_now(),
        }
        if update_data.refresh_token:
            values["refresh_token_encrypted"] = self.encryptor.encrypt(update_data.refresh_token)
        if update_data.scopes:
            values["scopes"] = list(update_data.scopes)
        stmt = (
            update(OAuthCredential)
            .where(
                OAuthCredential.id == credential_id,
                OAuthCredential.expires_at <= update_data.expires_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            logger.info(
                "Credential %s already holds a token with a later expiry; keeping it",
                credential_id,
            )
        return await self._reload(credential_id)

    async def mark_refresh_failed(
        self, credential_id: str, status: OAuthStatus, error: str
    ) -> CredentialResult:
        stmt = (
            update(OAuthCredential)
            .where(OAuthCredential.id == credential_id)
            .values(
                oauth_status=status.value,
                last_auth_error=error[:1000],
                refresh_failure_count=OAuthCredential.refresh_failure_count + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        return await self._reload(credential_id)

    async def set_last_sync(self, credential_id: str, at: datetime) -> None:
        await self.db.execute(
            update(OAuthCredential)
            .where(OAuthCredential.id == credential_id)
            .values(last_sync_at=at)
            .execution_options(synchronize_session=False)
        )

    async def set_webhook_subscription(
        self,
        credential_id: str,
        subscription_id: str,
        expires_at: datetime | None,
        account_ref: str | None = None,
    ) -> CredentialResult:
        row = await self._get_or_raise(credential_id)
        if account_ref:
            row.provider_account_id = account_ref
        row.webhook_subscription_id = subscription_id
        row.webhook_expires_at = expires_at
        return self._to_result(await self._save(row))
