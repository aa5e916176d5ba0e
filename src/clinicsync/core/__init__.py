"""Core module - Shared configuration, types and codecs."""

from clinicsync.core.codec import (
    RemoteTimestamp,
    decode_wire,
    dumps_local,
    encode_wire,
    loads_local,
    timestamps_to_datetimes,
)
from clinicsync.core.config import ServerConfig, SyncSettings
from clinicsync.core.types import ChangeType, SyncState, SyncStatus

__all__ = [
    # Codec
    "RemoteTimestamp",
    "decode_wire",
    "dumps_local",
    "encode_wire",
    "loads_local",
    "timestamps_to_datetimes",
    # Config
    "ServerConfig",
    "SyncSettings",
    # Types
    "ChangeType",
    "SyncState",
    "SyncStatus",
]
