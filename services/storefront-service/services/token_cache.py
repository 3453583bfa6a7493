"""Shared cache for payment gateway tokens."""
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import BKASH_TOKEN_TTL_SECONDS
from models import GatewayToken, utcnow
from monitoring import gateway_token_refresh_counter

logger = logging.getLogger(__name__)


class TokenCache:
    """
    Gateway token cache shared by every instance of the service.

    The ``gateway_tokens`` row is the source of truth; each process keeps
    the token in memory as well so most payments skip the database read.
    A token is used for ``ttl_seconds`` after it was granted, which must
    stay below the gateway's own token lifetime.
    """

    def __init__(
        self,
        provider: str = "bkash",
        ttl_seconds: int = BKASH_TOKEN_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow
    ):
        self.provider = provider
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    async def get_token(self, db: Session, grant: Callable[[], Awaitable[str]]) -> str:
        """
        Return a valid token, granting a new one through ``grant`` if needed.

        Args:
            db: Database session
            grant: Coroutine function requesting a token from the gateway

        Returns:
            Gateway token
        """
        now = self.clock()

        if self._token and self._expires_at and self._expires_at > now:
            gateway_token_refresh_counter.add(1, {"source": "memory"})
            return self._token

        row = db.query(GatewayToken).filter(GatewayToken.provider == self.provider).first()
        if row is not None and row.updated_at + self.ttl > now:
            self._token = row.auth_token
            self._expires_at = row.updated_at + self.ttl
            gateway_token_refresh_counter.add(1, {"source": "database"})
            logger.debug("Using gateway token from database", extra={"provider": self.provider})
            return self._token

        token = await grant()
        granted_at = self.clock()
        self._store(db, token, granted_at)

        self._token = token
        self._expires_at = granted_at + self.ttl
        gateway_token_refresh_counter.add(1, {"source": "granted"})
        logger.info("Refreshed gateway token", extra={"provider": self.provider})
        return token

    def _store(self, db: Session, token: str, granted_at: datetime) -> None:
        updated = (
            db.query(GatewayToken)
            .filter(GatewayToken.provider == self.provider)
            .update(
                {GatewayToken.auth_token: token, GatewayToken.updated_at: granted_at},
                synchronize_session=False
            )
        )
        if updated:
            db.commit()
            return
        try:
            db.add(GatewayToken(provider=self.provider, auth_token=token, updated_at=granted_at))
            db.commit()
        except IntegrityError:
            # Another instance inserted the row first
            db.rollback()
            db.query(GatewayToken).filter(GatewayToken.provider == self.provider).update(
                {GatewayToken.auth_token: token, GatewayToken.updated_at: granted_at},
                synchronize_session=False
            )
            db.commit()
