"""
Supabase Storage upload for user-supplied media.

Uploads go to the `uploads` bucket under a unique name:
  {unix_ms}-{random8}.{ext}

If Storage rejects the upload, the bytes are written to a local temp
directory instead and a file:// reference is returned. Those references
are never forwarded to remote stages and never scheduled for cleanup.
"""

import os
import time
import base64
import asyncio
import logging
import secrets
import binascii
import tempfile
from pathlib import Path
from typing import Optional

from supabase import Client, create_client

from .errors import StageError
from .models import MediaInput
from .stages import MediaUploader

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

DEFAULT_BUCKET = "uploads"  # UPLOAD_BUCKET
DEFAULT_LOCAL_DIR = os.path.join(tempfile.gettempdir(), "avatarflow_uploads")  # LOCAL_UPLOAD_DIR

# ── Lazy Supabase client ─────────────────────────────────────────────────────

_supabase_client: Optional[Client] = None


def get_supabase() -> Client:
    global _supabase_client
    if _supabase_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(url, key)
    return _supabase_client


# ── Helpers ──────────────────────────────────────────────────────────────────

def unique_object_name(filename: Optional[str]) -> str:
    """`{unix_ms}-{random8}.{ext}`, keeping the caller's extension if any."""
    ext = Path(filename).suffix.lstrip(".") if filename else ""
    stem = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    return f"{stem}.{ext}" if ext else stem


def decode_media(media: MediaInput) -> bytes:
    try:
        return base64.b64decode(media.data_base64 or "", validate=True)
    except (binascii.Error, ValueError) as e:
        raise StageError("upload", f"Media payload is not valid base64: {e}") from e


class SupabaseUploader(MediaUploader):
    """Upload raw media to Supabase Storage, falling back to a local file."""

    def __init__(
        self,
        client: Optional[Client] = None,
        bucket: Optional[str] = None,
        local_dir: Optional[str] = None,
    ):
        self._client = client
        self._bucket = bucket or os.getenv("UPLOAD_BUCKET", DEFAULT_BUCKET)
        self._local_dir = local_dir or os.getenv("LOCAL_UPLOAD_DIR", DEFAULT_LOCAL_DIR)

    def _put(self, object_name: str, data: bytes, content_type: str) -> str:
        client = self._client or get_supabase()
        bucket = client.storage.from_(self._bucket)
        bucket.upload(
            object_name,
            data,
            {"content-type": content_type, "cache-control": "3600", "upsert": "false"},
        )
        return bucket.get_public_url(object_name)

    def _write_local(self, object_name: str, data: bytes) -> str:
        os.makedirs(self._local_dir, exist_ok=True)
        path = Path(self._local_dir) / object_name
        path.write_bytes(data)
        return path.resolve().as_uri()

    async def upload(self, media: MediaInput) -> str:
        if media.url:
            return media.url

        data = decode_media(media)
        object_name = unique_object_name(media.filename)

        try:
            public_url = await asyncio.to_thread(
                self._put, object_name, data, media.content_type
            )
            logger.info(f"Uploaded to Supabase Storage: {public_url}")
            return public_url
        except Exception as e:
            logger.error(f"Storage upload failed for {object_name}: {e}")

        local_url = await asyncio.to_thread(self._write_local, object_name, data)
        logger.warning(f"Using ephemeral local reference: {local_url}")
        return local_url
