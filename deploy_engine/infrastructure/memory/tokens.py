# deploy_engine/infrastructure/memory/tokens.py

from copy import deepcopy
from threading import Lock
from typing import Dict, Iterable, Optional, Tuple

from deploy_engine.orchestrator.tokens import CapabilityToken, TokenStore


class InMemoryTokenStore(TokenStore):
    def __init__(self):
        self._store: Dict[Tuple[str, str], CapabilityToken] = {}
        self._lock = Lock()

    def get(self, app_name: str, source_id: str) -> Optional[CapabilityToken]:
        token = self._store.get((app_name, source_id))
        return deepcopy(token) if token else None

    def find_by_value(self, token: str) -> Optional[CapabilityToken]:
        for stored in list(self._store.values()):
            if stored.token == token:
                return deepcopy(stored)
        return None

    def save(self, token: CapabilityToken) -> None:
        with self._lock:
            self._store[(token.app_name, token.source_id)] = deepcopy(token)

    def delete(self, app_name: str, source_id: str) -> bool:
        with self._lock:
            return self._store.pop((app_name, source_id), None) is not None

    def list_all(self) -> Iterable[CapabilityToken]:
        return [deepcopy(t) for t in list(self._store.values())]
