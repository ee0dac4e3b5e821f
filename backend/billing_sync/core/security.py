"""Authentication dependency for account-scoped endpoints"""
import logging

from fastapi import HTTPException, Request

from billing_sync.db.redis import get_session

security_logger = logging.getLogger("security")


def require_auth(request: Request) -> str:
    """Dependency: Require authentication, return account_id

    Sessions are issued by the host application; we only resolve them.
    """
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    account_id = get_session(session_id)
    if not account_id:
        security_logger.info(
            f"Expired session - IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(401, "Session expired. Please log in again.")

    return account_id
