"""Firebase Admin SDK setup for meet-link push notifications."""

import json
import os

import firebase_admin
from firebase_admin import credentials
from structlog import get_logger

logger = get_logger(__name__)

_firebase_app: firebase_admin.App | None = None


def initialize_firebase(
    firebase_credentials_path: str | None = None,
    firebase_config_json: str | None = None,
    use_default_credentials: bool = False,
) -> bool:
    """
    Initialize the Admin SDK once per process.

    A raw service-account JSON string wins over a file path. Application
    Default Credentials are only tried when ``use_default_credentials`` is set.

    Returns:
        True when an app is available, False when push is left disabled.

    Raises:
        ValueError: If the JSON config cannot be parsed.
    """
    global _firebase_app

    if _firebase_app is not None:
        return True

    if firebase_config_json:
        cred = credentials.Certificate(json.loads(firebase_config_json))
        source = "json"
    elif firebase_credentials_path and os.path.exists(firebase_credentials_path):
        cred = credentials.Certificate(firebase_credentials_path)
        source = "file"
    elif use_default_credentials:
        cred = None
        source = "default"
    else:
        logger.info("firebase_not_configured")
        return False

    _firebase_app = firebase_admin.initialize_app(cred)
    logger.info("firebase_initialized", source=source)
    return True


def is_firebase_initialized() -> bool:
    """Check whether the Admin SDK has been initialized."""
    return _firebase_app is not None
