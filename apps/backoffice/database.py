import logging
import os
import threading

import firebase_admin
from firebase_admin import credentials, firestore

from .settings import settings

logger = logging.getLogger(__name__)

_INIT_LOCK = threading.Lock()


def init_firebase():
    """Initialize the default Firebase app once (service account file or ADC)."""
    with _INIT_LOCK:
        if firebase_admin._apps:
            return firebase_admin.get_app()
        path = settings.FIREBASE_CREDENTIALS_PATH
        if path and os.path.exists(path):
            cred = credentials.Certificate(path)
        else:
            logger.info("Firebase service account not found at %s; using application default credentials", path)
            cred = credentials.ApplicationDefault()
        return firebase_admin.initialize_app(cred)


class _LazyFirestore:
    """Firestore client that connects on first use.

    Importing the billing package (tests, CLI tooling) must not require credentials.
    """

    def __init__(self):
        self._client = None

    def _get(self):
        if self._client is None:
            init_firebase()
            self._client = firestore.client()
        return self._client

    def __getattr__(self, name):
        return getattr(self._get(), name)


db = _LazyFirestore()
