from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when a stored value cannot be decoded."""


class KeyValueStore(Protocol):
    """String-keyed persistent storage."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryKeyValueStore:
    """Process-local store; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class RedisKeyValueStore:
    """Durable store on a redis client. Keys are namespaced so ``clear`` only touches ours."""

    def __init__(self, client: Any, namespace: str = "fasten:"):
        self.client = client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Optional[str]:
        val = self.client.get(self._key(key))
        if val is None:
            return None
        return val.decode("utf-8") if isinstance(val, bytes) else str(val)

    def set(self, key: str, value: str) -> None:
        self.client.set(self._key(key), str(value))

    def remove(self, key: str) -> None:
        self.client.delete(self._key(key))

    def clear(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.namespace}*"))
        if keys:
            self.client.delete(*keys)


def _truthy(v: Optional[str], default: str = '0') -> bool:
    s = v if v is not None else default
    return str(s).strip().lower() in ('1', 'true', 'yes', 'on')


def make_redis_client() -> Any:
    """Build the redis client from env: FakeRedis when USE_FAKEREDIS is set, else a real server."""
    if _truthy(os.getenv('USE_FAKEREDIS', '1')):
        import fakeredis
        return fakeredis.FakeRedis(decode_responses=False)
    from redis import Redis
    return Redis(
        host=os.getenv('REDIS_HOST', '127.0.0.1'),
        port=int(os.getenv('REDIS_PORT', '6379')),
        db=int(os.getenv('REDIS_DB', '0')),
        password=os.getenv('REDIS_PASSWORD') or None,
        ssl=_truthy(os.getenv('REDIS_SSL', '0')),
        decode_responses=False,
    )


def build_store(kind: Optional[str] = None, *, client: Any = None) -> KeyValueStore:
    """Pick the storage implementation once, at construction time.
    ``kind`` defaults to FASTEN_STORAGE ('redis' or 'memory').
    """
    selected = (kind or os.getenv('FASTEN_STORAGE', 'redis')).strip().lower()
    if selected == 'memory':
        return MemoryKeyValueStore()
    if selected != 'redis':
        raise StorageError(f"Unknown storage kind: {selected}")
    return RedisKeyValueStore(client if client is not None else make_redis_client())


# --------------------- Typed preferences ---------------------

DOMAIN_KEY = 'fasten_domain_url'
AUTH_TOKEN_KEY = 'fasten_auth_token'
ASSISTANT_DOMAIN_KEY = 'fasten_ai_domain_url'
USERNAME_KEY = 'fasten_username'
CHAT_HISTORY_KEY = 'fasten_chat_history'
RELATIONSHIPS_KEY = 'fasten_patient_relationships'
FAMILY_MEMBERS_KEY = 'fasten_family_members'
PRIVACY_MODE_KEY = 'fasten_privacy_mode'
NOTIFICATIONS_KEY = 'fasten_notifications_enabled'

SELF_RELATIONSHIP = 'self'


class ClientPreferences:
    """Typed access to the values the client keeps between sessions."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    # -- plain strings --
    def _get_str(self, key: str) -> Optional[str]:
        val = self.store.get(key)
        return val if val else None

    def _set_str(self, key: str, value: Optional[str]) -> None:
        if value:
            self.store.set(key, value)
        else:
            self.store.remove(key)

    @property
    def domain(self) -> Optional[str]:
        return self._get_str(DOMAIN_KEY)

    def change_domain(self, domain: str) -> None:
        """Point the client at another server. Everything stored for the old one is dropped."""
        self.store.clear()
        self.store.set(DOMAIN_KEY, domain)

    @property
    def auth_token(self) -> Optional[str]:
        return self._get_str(AUTH_TOKEN_KEY)

    @auth_token.setter
    def auth_token(self, token: Optional[str]) -> None:
        self._set_str(AUTH_TOKEN_KEY, token)

    @property
    def assistant_domain(self) -> Optional[str]:
        return self._get_str(ASSISTANT_DOMAIN_KEY)

    @assistant_domain.setter
    def assistant_domain(self, domain: Optional[str]) -> None:
        self._set_str(ASSISTANT_DOMAIN_KEY, domain)

    @property
    def username(self) -> Optional[str]:
        return self._get_str(USERNAME_KEY)

    @username.setter
    def username(self, name: Optional[str]) -> None:
        self._set_str(USERNAME_KEY, name)

    # -- JSON lists --
    def _get_list(self, key: str) -> List[Any]:
        raw = self.store.get(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise StorageError(f"Stored value for {key} is not valid JSON: {e}")
        if not isinstance(data, list):
            raise StorageError(f"Expected a list in {key}")
        return data

    def _set_list(self, key: str, items: Iterable[Any]) -> None:
        self.store.set(key, json.dumps(list(items), ensure_ascii=False))

    @property
    def chat_history(self) -> List[Dict[str, Any]]:
        return [m for m in self._get_list(CHAT_HISTORY_KEY) if isinstance(m, dict)]

    @chat_history.setter
    def chat_history(self, messages: Iterable[Dict[str, Any]]) -> None:
        self._set_list(CHAT_HISTORY_KEY, messages)

    def clear_chat_history(self) -> None:
        self.store.remove(CHAT_HISTORY_KEY)

    @property
    def relationships(self) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for item in self._get_list(RELATIONSHIPS_KEY):
            if isinstance(item, dict) and item.get('id'):
                out.append({'id': str(item['id']), 'relationship': str(item.get('relationship') or '')})
        return out

    @relationships.setter
    def relationships(self, items: Iterable[Dict[str, Any]]) -> None:
        self._set_list(RELATIONSHIPS_KEY, items)

    def set_relationship(self, patient_id: str, relationship: str) -> None:
        """Record how a patient relates to the user. Only one patient can be 'self'."""
        rel = relationship.strip().lower()
        updated = [r for r in self.relationships if r['id'] != patient_id]
        if rel == SELF_RELATIONSHIP:
            updated = [r for r in updated if r['relationship'].lower() != SELF_RELATIONSHIP]
        updated.append({'id': patient_id, 'relationship': rel})
        self.relationships = updated

    @property
    def self_patient_id(self) -> Optional[str]:
        for r in self.relationships:
            if r['relationship'].lower() == SELF_RELATIONSHIP:
                return r['id']
        return None

    @property
    def family_members(self) -> List[Dict[str, Any]]:
        return [m for m in self._get_list(FAMILY_MEMBERS_KEY) if isinstance(m, dict)]

    @family_members.setter
    def family_members(self, members: Iterable[Dict[str, Any]]) -> None:
        self._set_list(FAMILY_MEMBERS_KEY, members)

    # -- booleans --
    def _get_bool(self, key: str, default: bool) -> bool:
        raw = self.store.get(key)
        if raw is None:
            return default
        return _truthy(raw)

    @property
    def privacy_mode(self) -> bool:
        return self._get_bool(PRIVACY_MODE_KEY, False)

    @privacy_mode.setter
    def privacy_mode(self, enabled: bool) -> None:
        self.store.set(PRIVACY_MODE_KEY, 'true' if enabled else 'false')

    @property
    def notifications_enabled(self) -> bool:
        return self._get_bool(NOTIFICATIONS_KEY, True)

    @notifications_enabled.setter
    def notifications_enabled(self, enabled: bool) -> None:
        self.store.set(NOTIFICATIONS_KEY, 'true' if enabled else 'false')

    def sign_out(self) -> None:
        self.store.remove(AUTH_TOKEN_KEY)
        logger.info("Signed out; auth token removed")
