"""
FastAPI dependencies for authentication.
Provides get_current_owner, which verifies a Firebase ID token and returns
the uid that usage is billed to.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from emailkit.auth.firebase import verify_firebase_token

# HTTPBearer scheme for extracting Authorization header
security = HTTPBearer()


async def get_current_owner(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Verify the bearer token and return the owner id.

    Raises:
        HTTPException 401: If token is missing, invalid, or expired
        HTTPException 503: If authentication is not configured
    """
    token = credentials.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        decoded_token = verify_firebase_token(token)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        )

    owner_id = decoded_token.get("uid")
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing uid",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return owner_id
