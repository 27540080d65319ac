# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from typing import Optional


class SyncError(Exception):
    """Base class for recoverable failures of the chat sync collaborators."""


class StoreUnavailable(SyncError):
    """Reading from the message store failed (transport or authorisation)."""


class EndpointError(SyncError):
    """The submission endpoint could not be reached or answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
