"""Local API-key registry with quota tracking and remote snapshot sync."""

from keyswitch._config import RemoteOptions, SyncConfig, UsageOptions, default_config_path
from keyswitch._context import Context
from keyswitch._errors import (
    AlreadyExists,
    AuthenticationFailed,
    Canceled,
    CorruptData,
    DeadlineExceeded,
    InvalidInput,
    KeyswitchError,
    NotFound,
    NotLoaded,
    RemoteFailure,
    StorageFailure,
)
from keyswitch._manager import KeyManager
from keyswitch._models import UNSET, ApiKey, KeyKind, KeyPatch, QuotaPeriod, Registry, RemoteSettings
from keyswitch._profile import normalize_profile
from keyswitch._quota import key_remaining, period_elapsed, remaining
from keyswitch._snapshot import Snapshot, load_snapshot_file, save_snapshot_file
from keyswitch._storage import Storage
from keyswitch._sync import RemoteSync, SyncResult
from keyswitch._transfer import export_registry, import_registry, infer_format, merge_registries
from keyswitch.remote._client import RemoteClient, open_client, register_provider
from keyswitch.usage import RefreshResult, UsageClient, UsageResult, open_usage_client, refresh_usage

__version__ = "0.1.0"

__all__ = [
    # Core
    "KeyManager",
    "Storage",
    # Models
    "ApiKey",
    "KeyKind",
    "KeyPatch",
    "QuotaPeriod",
    "Registry",
    "RemoteSettings",
    "UNSET",
    # Quota
    "period_elapsed",
    "remaining",
    "key_remaining",
    "UsageClient",
    "UsageResult",
    "RefreshResult",
    "open_usage_client",
    "refresh_usage",
    # Snapshot & sync
    "Snapshot",
    "save_snapshot_file",
    "load_snapshot_file",
    "RemoteSync",
    "SyncResult",
    "RemoteClient",
    "open_client",
    "register_provider",
    "normalize_profile",
    "Context",
    # Import/export
    "export_registry",
    "import_registry",
    "infer_format",
    "merge_registries",
    # Config
    "RemoteOptions",
    "SyncConfig",
    "UsageOptions",
    "default_config_path",
    # Errors
    "KeyswitchError",
    "InvalidInput",
    "AlreadyExists",
    "NotFound",
    "NotLoaded",
    "StorageFailure",
    "CorruptData",
    "AuthenticationFailed",
    "RemoteFailure",
    "DeadlineExceeded",
    "Canceled",
    # Version
    "__version__",
]
