"""Provider usage checks and quota refresh."""

from keyswitch.usage._client import UsageClient, UsageResult, open_usage_client, register_usage_client
from keyswitch.usage._crs import CRSUsageClient
from keyswitch.usage._openai import OpenAIUsageClient
from keyswitch.usage._refresh import RefreshResult, refresh_usage

__all__ = [
    "CRSUsageClient",
    "OpenAIUsageClient",
    "RefreshResult",
    "UsageClient",
    "UsageResult",
    "open_usage_client",
    "refresh_usage",
    "register_usage_client",
]
