"""
Pending deposit state in Redis with signed serialization (itsdangerous).
One entry per user: the invoice being watched and the watcher task id.
The entry is the watcher's cancellation token: once it is gone or points to
another invoice, the watcher for the old invoice stops.
"""
from typing import Any

import redis
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from proxyshop.core.config import settings


class PendingDepositStore:
    def __init__(self, client: redis.Redis | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.serializer = URLSafeTimedSerializer(settings.state_secret, salt="pending-deposit")
        # a bit longer than the invoice itself so the final poll still sees the token
        self.default_ttl = settings.deposit_invoice_ttl_seconds + 120

    def _key(self, user_id: str) -> str:
        return f"deposit:pending:{user_id}"

    def _decode(self, raw: str | None) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            data = self.serializer.loads(raw, max_age=self.default_ttl)
        except (BadSignature, SignatureExpired):
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, user_id: str) -> dict[str, Any]:
        """Returns {} if not found, expired or tampered with."""
        return self._decode(self.client.get(self._key(user_id)))

    def set(self, user_id: str, invoice_id: str, task_id: str | None = None, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds or self.default_ttl
        signed = self.serializer.dumps({"invoice_id": str(invoice_id), "task_id": task_id})
        self.client.setex(self._key(user_id), ttl, signed)

    def set_task(self, user_id: str, invoice_id: str, task_id: str) -> bool:
        """Attach the watcher task id, only if the entry still belongs to this invoice."""
        if not self.is_current(user_id, invoice_id):
            return False
        ttl = self.client.ttl(self._key(user_id))
        self.set(user_id, invoice_id, task_id, ttl_seconds=ttl if ttl and ttl > 0 else None)
        return True

    def is_current(self, user_id: str, invoice_id: str) -> bool:
        return self.get(user_id).get("invoice_id") == str(invoice_id)

    def clear(self, user_id: str, invoice_id: str | None = None) -> bool:
        """
        Delete the entry. With `invoice_id`, only if it still points to that
        invoice (compare-and-delete, so a finished watcher never removes its
        replacement's token).
        """
        key = self._key(user_id)
        if invoice_id is None:
            return bool(self.client.delete(key))
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    if self._decode(pipe.get(key)).get("invoice_id") != str(invoice_id):
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue
