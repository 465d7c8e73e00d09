"""Remote object clients for snapshot sync."""

from keyswitch.remote._b2 import B2Client
from keyswitch.remote._client import RemoteClient, RemoteObject, open_client, register_provider
from keyswitch.remote._s3 import S3Client

__all__ = ["B2Client", "RemoteClient", "RemoteObject", "S3Client", "open_client", "register_provider"]
