"""Refresh stored quota usage from the providers of several keys at once."""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from keyswitch._config import UsageOptions
from keyswitch._context import Context
from keyswitch._errors import KeyswitchError, NotFound
from keyswitch._models import utcnow
from keyswitch.usage._client import UsageResult, open_usage_client

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from keyswitch._manager import KeyManager
    from keyswitch._models import ApiKey
    from keyswitch.usage._client import UsageClient

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class RefreshResult:
    """Outcome of the usage check of one key.

    :param key_id: Id of the checked key.
    :param name: Name of the checked key.
    :param usage: What the provider reported, if the check succeeded.
    :param error: Why the check failed, if it did.
    """

    key_id: str
    name: str
    usage: UsageResult | None = None
    error: KeyswitchError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def refresh_usage(
    manager: KeyManager,
    key_ids: Iterable[str] | None = None,
    *,
    options: UsageOptions | None = None,
    client_factory: Callable[[str, UsageOptions], UsageClient] = open_usage_client,
    ctx: Context | None = None,
) -> list[RefreshResult]:
    """Fetch current usage for the given keys and record it on the manager.

    Keys are checked in parallel on up to ``options.max_workers`` threads,
    one usage client per key kind. The manager lock is only taken to record
    each result. A failed check leaves its key untouched and is reported in
    its result; the registry is saved once if any check succeeded.

    :param manager: A loaded key manager.
    :param key_ids: Keys to check; ``None`` checks every key.
    :param client_factory: Builds the usage client for a key kind.
    :returns: One result per key, in request order.
    :raises NotFound: If a requested key id is unknown.
    """
    options = options or UsageOptions()
    options.validate()
    ctx = ctx or Context.background()
    keys = manager.config().keys
    if key_ids is None:
        targets = list(keys)
    else:
        by_id = {k.id: k for k in keys}
        targets = []
        for key_id in key_ids:
            if key_id not in by_id:
                raise NotFound(f"Key not found: {key_id}", key=key_id, operation="refresh_usage")
            targets.append(by_id[key_id])
    if not targets:
        return []

    clients: dict[str, UsageClient] = {}
    clients_lock = threading.Lock()

    def check(key: ApiKey) -> RefreshResult:
        try:
            with clients_lock:
                if key.kind not in clients:
                    clients[key.kind] = client_factory(key.kind, options)
                client = clients[key.kind]
            usage = client.fetch_usage(key, ctx)
            manager.update_usage(key.id, usage.used, usage.limit, utcnow())
        except KeyswitchError as exc:
            log.debug("Usage check failed for key %s: %s", key.id, exc)
            return RefreshResult(key_id=key.id, name=key.name, error=exc)
        return RefreshResult(key_id=key.id, name=key.name, usage=usage)

    try:
        with ThreadPoolExecutor(
            max_workers=min(options.max_workers, len(targets)), thread_name_prefix="keyswitch-refresh"
        ) as pool:
            results = list(pool.map(check, targets))
    finally:
        for client in clients.values():
            client.close()

    if any(r.ok for r in results):
        manager.save()
    log.debug("Refreshed usage of %d of %d keys", sum(r.ok for r in results), len(results))
    return results
