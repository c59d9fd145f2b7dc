# portal/services/gcp_clients.py
import logging
from functools import lru_cache
from google.cloud import storage as gcs
from google.cloud import firestore

from portal.core.config import settings

log = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_storage_client() -> gcs.Client | None:
    if not (settings.firestore_configured and settings.gcs_bucket):
        return None
    return gcs.Client(project=settings.gcp_project)


@lru_cache(maxsize=1)
def get_firestore_client() -> firestore.Client | None:
    """Firestore client, or None when the project isn't configured (demo mode)."""
    if not settings.firestore_configured:
        log.warning("[firestore] not configured - running in demo mode")
        return None
    try:
        return firestore.Client(project=settings.gcp_project)
    except Exception as e:
        log.error("[firestore] client init failed, running in demo mode: %s", e)
        return None


def get_bucket():
    client = get_storage_client()
    return client.bucket(settings.gcs_bucket) if client else None
