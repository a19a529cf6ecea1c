"""
Firebase Admin SDK initialization and ID-token verification.
The Firebase uid of a verified token is the billed owner id.
"""
import json
import os
import logging
from typing import Optional
import firebase_admin
from firebase_admin import credentials, auth
from emailkit.config import settings

logger = logging.getLogger(__name__)


# Global Firebase app instance
_firebase_app: Optional[firebase_admin.App] = None


def _load_credentials(raw: Optional[str]) -> credentials.Base:
    """
    Build credentials from FIREBASE_CREDENTIALS_JSON.

    Accepts a file path (absolute, or relative to the backend directory) or
    an inline JSON document. Falls back to application default credentials.
    """
    if not raw:
        return credentials.ApplicationDefault()

    backend_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    candidates = [raw] if os.path.isabs(raw) else [os.path.join(backend_dir, raw.lstrip('./')), raw]
    for path in candidates:
        if os.path.exists(path):
            logger.info(f"Loaded Firebase credentials from file: {path}")
            return credentials.Certificate(path)

    try:
        cred_dict = json.loads(raw)
    except json.JSONDecodeError:
        raise ValueError(
            f"FIREBASE_CREDENTIALS_JSON must be a valid file path or JSON string. Tried: {', '.join(candidates)}"
        )
    logger.info("Loaded Firebase credentials from JSON string")
    return credentials.Certificate(cred_dict)


def initialize_firebase() -> None:
    """Initialize the Firebase Admin SDK once per process."""
    global _firebase_app

    if _firebase_app is not None:
        return

    if not settings.firebase_project_id:
        raise ValueError("FIREBASE_PROJECT_ID must be set")

    _firebase_app = firebase_admin.initialize_app(
        _load_credentials(settings.firebase_credentials_json),
        {"projectId": settings.firebase_project_id}
    )


def verify_firebase_token(token: str) -> dict:
    """
    Verify Firebase ID token and return decoded token claims.

    Raises:
        ValueError: If token is invalid, expired, or revoked
        RuntimeError: If the SDK was never initialized
    """
    if _firebase_app is None:
        raise RuntimeError("Firebase Admin SDK not initialized. Call initialize_firebase() first.")

    try:
        return auth.verify_id_token(token)
    except ValueError:
        raise
    except Exception as e:
        raise ValueError(f"Token verification failed: {str(e)}")
