# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Client-side synchronisation of chat messages with the counsel chat backend."""

from typing import Optional

import httpx

from src.config.loader import get_str_env

from .engine import ReconciliationEngine
from .errors import EndpointError, StoreUnavailable, SyncError
from .http_client import HttpMessageStore, HttpSubmissionEndpoint
from .models import ChangeEvent, ChangeRow, Message, SubmitResult

__all__ = [
    "ChangeEvent",
    "ChangeRow",
    "EndpointError",
    "HttpMessageStore",
    "HttpSubmissionEndpoint",
    "Message",
    "ReconciliationEngine",
    "StoreUnavailable",
    "SubmitResult",
    "SyncError",
    "create_http_engine",
]


def create_http_engine(
    client: Optional[httpx.AsyncClient] = None,
    *,
    access_token: Optional[str] = None,
    **engine_options,
) -> ReconciliationEngine:
    """Build an engine wired to the HTTP backend at ``COUNSEL_API_BASE``."""
    if client is None:
        client = httpx.AsyncClient(base_url=get_str_env("COUNSEL_API_BASE", "http://localhost:8000"))
    return ReconciliationEngine(
        HttpMessageStore(client, access_token=access_token),
        HttpSubmissionEndpoint(client, access_token=access_token),
        **engine_options,
    )
