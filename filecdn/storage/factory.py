from __future__ import annotations
import logging
from typing import Callable, Dict, Optional

from .base import StorageBackend
from .cloudinary import CloudinaryStorage
from .imagekit import ImageKitStorage
from .providers import CLOUDINARY, IMAGEKIT, NEON, SUPABASE, TURSO
from .sqlblob import SqlBlobStorage
from .supabase import SupabaseStorage
from filecdn.config import settings
from filecdn.db.sql_http import LibsqlHttpClient, NeonHttpClient
from filecdn.errors import BackendError

log = logging.getLogger(__name__)

BackendLookup = Callable[[str], StorageBackend]

_backends: Dict[str, StorageBackend] = {}


def _build(provider: str) -> Optional[StorageBackend]:
    timeout = settings.backend_timeout_seconds
    if provider == SUPABASE and settings.supabase_url and settings.supabase_service_role_key:
        return SupabaseStorage(
            settings.supabase_url, settings.supabase_service_role_key, settings.supabase_bucket, timeout_s=timeout
        )
    if provider == CLOUDINARY and settings.cloudinary_cloud_name and settings.cloudinary_api_key and settings.cloudinary_api_secret:
        return CloudinaryStorage(
            settings.cloudinary_cloud_name,
            settings.cloudinary_api_key,
            settings.cloudinary_api_secret,
            folder=settings.cloudinary_folder,
            timeout_s=timeout,
        )
    if provider == IMAGEKIT and settings.imagekit_private_key:
        return ImageKitStorage(settings.imagekit_private_key, folder=settings.imagekit_folder, timeout_s=timeout)
    if provider == NEON and settings.neon_database_url:
        return SqlBlobStorage(NeonHttpClient(settings.neon_database_url, timeout_s=timeout), timeout_s=timeout)
    if provider == TURSO and settings.turso_database_url:
        return SqlBlobStorage(
            LibsqlHttpClient(settings.turso_database_url, settings.turso_auth_token, timeout_s=timeout),
            timeout_s=timeout,
        )
    return None


def get_storage_backend(provider: str) -> StorageBackend:
    """Configured backend for `provider`; BackendError if its credentials are missing."""
    backend = _backends.get(provider)
    if backend is None:
        backend = _build(provider)
        if backend is None:
            raise BackendError(f"Storage provider '{provider}' is not configured", provider=provider)
        _backends[provider] = backend
    return backend


def register_backend(provider: str, backend: StorageBackend) -> None:
    _backends[provider] = backend


def reset_backends() -> None:
    _backends.clear()


def configured_backends() -> Dict[str, StorageBackend]:
    out: Dict[str, StorageBackend] = {}
    for provider in (CLOUDINARY, IMAGEKIT, SUPABASE, NEON, TURSO):
        try:
            out[provider] = get_storage_backend(provider)
        except BackendError:
            continue
    return out


def get_backend_lookup() -> BackendLookup:
    """FastAPI dependency: the provider -> backend resolver."""
    return get_storage_backend
