"""Capability tokens handed to deployed applications."""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, List, Optional

from deploy_engine.core.errors import TokenIssuanceError
from deploy_engine.core.models import utcnow

logger = logging.getLogger(__name__)


DEFAULT_PERMISSIONS = ("check-self-updates", "update-self", "get-self-status")


@dataclass
class CapabilityToken:
    app_name: str
    token: str
    source_id: str
    permissions: List[str] = field(default_factory=lambda: list(DEFAULT_PERMISSIONS))
    created_at: datetime = field(default_factory=utcnow)
    last_used: Optional[datetime] = None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


class TokenStore(ABC):
    @abstractmethod
    def get(self, app_name: str, source_id: str) -> Optional[CapabilityToken]:
        raise NotImplementedError

    @abstractmethod
    def find_by_value(self, token: str) -> Optional[CapabilityToken]:
        raise NotImplementedError

    @abstractmethod
    def save(self, token: CapabilityToken) -> None:
        """Insert or replace the token for (app_name, source_id)."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, app_name: str, source_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> Iterable[CapabilityToken]:
        raise NotImplementedError


class CapabilityTokens:
    def __init__(self, store: TokenStore):
        self._store = store

    def issue(self, app_name: str, source_id: str, already_installed: bool = False) -> Optional[CapabilityToken]:
        """
        Existing token for (app_name, source_id), or a new one.

        A re-install with no stored token gets none, so a running app never
        sees its token change underneath it.
        """
        try:
            existing = self._store.get(app_name, source_id)
            if existing:
                logger.info(f"[tokens] 🔑 reusing token for {app_name}")
                return existing

            if already_installed:
                logger.info(f"[tokens] ⏭️ no stored token for installed app {app_name}, skipping")
                return None

            token = CapabilityToken(
                app_name=app_name,
                token=secrets.token_hex(32),
                source_id=source_id,
            )
            self._store.save(token)
        except TokenIssuanceError:
            raise
        except Exception as e:
            raise TokenIssuanceError(f"Could not issue capability token for {app_name}: {e}") from e

        logger.info(f"[tokens] 🔑 issued token for {app_name}")
        return token

    def validate(self, token: str) -> Optional[CapabilityToken]:
        found = self._store.find_by_value(token) if token else None
        if not found:
            logger.info(f"[tokens] ❌ validation failed for {(token or '')[:8]}...")
            return None

        found = replace(found, last_used=utcnow())
        self._store.save(found)
        return found

    def revoke(self, app_name: str, source_id: str) -> bool:
        removed = self._store.delete(app_name, source_id)
        if removed:
            logger.info(f"[tokens] removed token for {app_name}")
        return removed
