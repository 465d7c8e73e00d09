"""Configuration model — immutable containers for sync and remote-client tuning."""

from __future__ import annotations

import dataclasses
from pathlib import Path

DEFAULT_CONFIG_DIRNAME = ".codex-manager"
DEFAULT_CONFIG_FILENAME = "config.json"


def default_config_path() -> Path:
    """Return ``~/.codex-manager/config.json``."""
    return Path.home() / DEFAULT_CONFIG_DIRNAME / DEFAULT_CONFIG_FILENAME


@dataclasses.dataclass(frozen=True)
class RemoteOptions:
    """Tuning for remote object clients.

    :param authorize_url: Account-authorization endpoint of the B2 API.
    :param http_timeout: Upper bound in seconds for a single HTTP call.
    :param token_lifetime: Seconds an authorization token is assumed valid.
    :param refresh_margin: Re-authorize when fewer seconds than this remain.
    :param error_body_limit: Bytes of an error response kept for diagnostics.
    :param fallback_object_key: Object name used when a blank key is given.
    """

    authorize_url: str = "https://api.backblazeb2.com/b2api/v2/b2_authorize_account"
    http_timeout: float = 30.0
    token_lifetime: float = 22 * 3600.0
    refresh_margin: float = 120.0
    error_body_limit: int = 4096
    fallback_object_key: str = "snapshot.json"

    def validate(self) -> None:
        """Reject unusable values.

        :raises ValueError: If a timeout, lifetime or limit is not positive.
        """
        for name in ("http_timeout", "token_lifetime", "error_body_limit"):
            if getattr(self, name) <= 0:
                raise ValueError(f"RemoteOptions.{name} must be positive, got {getattr(self, name)!r}")
        if self.refresh_margin < 0 or self.refresh_margin >= self.token_lifetime:
            raise ValueError("RemoteOptions.refresh_margin must be within [0, token_lifetime)")
        if not self.authorize_url.strip():
            raise ValueError("RemoteOptions.authorize_url must be a non-empty string")


@dataclasses.dataclass(frozen=True)
class UsageOptions:
    """Tuning for provider usage checks.

    :param http_timeout: Upper bound in seconds for one usage request.
    :param error_body_limit: Bytes of an error response kept for diagnostics.
    :param max_workers: Keys checked in parallel by a refresh.
    """

    http_timeout: float = 10.0
    error_body_limit: int = 4096
    max_workers: int = 4

    def validate(self) -> None:
        """:raises ValueError: If a timeout, limit or worker count is not positive."""
        for name in ("http_timeout", "error_body_limit", "max_workers"):
            if getattr(self, name) <= 0:
                raise ValueError(f"UsageOptions.{name} must be positive, got {getattr(self, name)!r}")


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Top-level settings for the snapshot sync workflow.

    :param prepare_timeout: Deadline in seconds for ``init`` (authorize + bucket lookup).
    :param transfer_timeout: Deadline in seconds for ``push``, ``pull`` and ``delete``.
    :param snapshot_dirname: Directory next to the registry file holding local snapshot copies.
    :param remote: Remote client tuning.
    """

    prepare_timeout: float = 30.0
    transfer_timeout: float = 60.0
    snapshot_dirname: str = "snapshots"
    remote: RemoteOptions = dataclasses.field(default_factory=RemoteOptions)

    def validate(self) -> None:
        """Validate timeouts, the snapshot directory name and the remote options.

        :raises ValueError: If any value is unusable.
        """
        if self.prepare_timeout <= 0 or self.transfer_timeout <= 0:
            raise ValueError("SyncConfig timeouts must be positive")
        if not self.snapshot_dirname.strip() or "/" in self.snapshot_dirname or "\\" in self.snapshot_dirname:
            raise ValueError(f"Invalid snapshot directory name: {self.snapshot_dirname!r}")
        self.remote.validate()

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> SyncConfig:
        """Construct from a plain dict (e.g. parsed TOML/JSON).

        Unknown keys are rejected so typos do not silently fall back to defaults.

        :param data: Dict with optional top-level fields and a ``remote`` sub-dict.
        """
        raw_remote = data.get("remote", {})
        if not isinstance(raw_remote, dict):
            msg = "Expected 'remote' to be a dict"
            raise TypeError(msg)

        sync_fields = {f.name for f in dataclasses.fields(cls)} - {"remote"}
        remote_fields = {f.name for f in dataclasses.fields(RemoteOptions)}
        unknown = (set(data) - sync_fields - {"remote"}) | {f"remote.{k}" for k in set(raw_remote) - remote_fields}
        if unknown:
            raise ValueError(f"Unknown sync config keys: {sorted(unknown)}")

        remote = RemoteOptions(**{str(k): v for k, v in raw_remote.items()})  # type: ignore[arg-type]
        config = cls(remote=remote, **{k: v for k, v in data.items() if k != "remote"})  # type: ignore[arg-type]
        config.validate()
        return config
