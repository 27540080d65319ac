# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from typing import Optional
from urllib.parse import unquote

from fastapi import HTTPException, Request, status

_ACCESS_TOKEN_COOKIE = "sb-access-token"


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract the caller's access token from headers or cookies."""
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):].strip()
        if token:
            return token

    # Some clients cannot set Authorization and use a custom header instead.
    supabase_header = request.headers.get("x-supabase-auth")
    if supabase_header:
        return supabase_header.strip()

    cookie = request.cookies.get(_ACCESS_TOKEN_COOKIE)
    if cookie:
        return unquote(cookie)
    return None


def get_current_user_id(request: Request) -> str:
    """Resolve the authenticated principal; the access token is the opaque user id."""
    token = get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return token
