from __future__ import annotations

from .connectivity import (
    ConnectivitySource,
    ManualConnectivity,
    PeriodicConnectivityCheck,
    Subscription,
    tcp_probe,
)
from .engine import DrainResult, RecordOutcome, SyncCompleteEvent, SyncEngine, backoff_delay
from .remote import HttpRemoteMemoryClient, RemoteMemoryClient, classify_status

__all__ = [
    "ConnectivitySource",
    "DrainResult",
    "HttpRemoteMemoryClient",
    "ManualConnectivity",
    "PeriodicConnectivityCheck",
    "RecordOutcome",
    "RemoteMemoryClient",
    "Subscription",
    "SyncCompleteEvent",
    "SyncEngine",
    "backoff_delay",
    "classify_status",
    "tcp_probe",
]
