"""
Icon hosting for synced markets and events

Icons named in market metadata are pulled from the Irys gateway and
re-hosted in a public Supabase bucket. Rows keep the bucket path, e.g.
`events/icons/us-election.jpg`, never the gateway URL.
"""
from typing import Optional

from supabase import create_client, Client

from config import Config
from utils.logger import get_logger

logger = get_logger(__name__)

ICON_MAX_BYTES = 5 * 1024 * 1024
ICON_CACHE_SECONDS = "3600"
DEFAULT_ICON_TYPE = "image/jpeg"

# Leading bytes -> MIME type
_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def sniff_image_type(data: bytes) -> str:
    """Best guess at an icon's MIME type from its first bytes"""
    for signature, mime in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.lstrip()[:5] in (b"<svg ", b"<?xml"):
        return "image/svg+xml"
    return DEFAULT_ICON_TYPE


class StorageService:
    """
    Uploads market and event icons to a Supabase bucket

    Nothing here raises: a missing client, an oversized icon or a failed
    upload is logged and reported as None so the sync keeps going.
    """

    def __init__(self, client: Optional[Client] = None, bucket_name: Optional[str] = None):
        self.bucket_name = bucket_name or Config.SUPABASE_STORAGE_BUCKET
        self.supabase: Optional[Client] = client or self._connect()

    @staticmethod
    def _connect() -> Optional[Client]:
        if not (Config.SUPABASE_URL and Config.SUPABASE_SERVICE_KEY):
            logger.info("Supabase credentials not set, icons will not be re-hosted")
            return None
        try:
            return create_client(Config.SUPABASE_URL, Config.SUPABASE_SERVICE_KEY)
        except Exception as e:
            logger.warning(f"⚠️ Could not create Supabase client, icons disabled: {e}")
            return None

    def is_available(self) -> bool:
        return self.supabase is not None

    def upload_asset(
        self,
        storage_path: str,
        file_data: bytes,
        content_type: Optional[str] = None
    ) -> Optional[str]:
        """
        Store one icon, replacing whatever already sits at the path

        Args:
            storage_path: Bucket path, e.g. 'markets/icons/0xabc.jpg'
            file_data: Image bytes from the gateway
            content_type: MIME type; sniffed from the bytes when omitted

        Returns:
            storage_path on success, None otherwise
        """
        if not self.is_available():
            return None
        if not file_data:
            logger.warning(f"Empty icon for {storage_path}, skipping upload")
            return None
        if len(file_data) > ICON_MAX_BYTES:
            logger.warning(f"Icon for {storage_path} is {len(file_data)} bytes, over the bucket limit")
            return None

        mime = content_type or sniff_image_type(file_data)
        try:
            self.supabase.storage.from_(self.bucket_name).upload(
                path=storage_path,
                file=file_data,
                file_options={"content-type": mime, "cache-control": ICON_CACHE_SECONDS, "upsert": "true"}
            )
        except Exception as e:
            logger.error(f"❌ Icon upload failed for {storage_path}: {e}")
            return None

        logger.debug(f"🖼️ Stored icon {storage_path} ({mime}, {len(file_data)} bytes)")
        return storage_path

    def ensure_bucket_exists(self) -> bool:
        """Create the public icon bucket on first boot; True once it exists"""
        if not self.is_available():
            return False

        storage = self.supabase.storage
        try:
            if any(bucket.name == self.bucket_name for bucket in storage.list_buckets()):
                return True
            storage.create_bucket(
                self.bucket_name,
                options={
                    "public": True,
                    "file_size_limit": ICON_MAX_BYTES,
                    "allowed_mime_types": sorted({mime for _, mime in _IMAGE_SIGNATURES} | {"image/webp", "image/svg+xml"}),
                }
            )
        except Exception as e:
            logger.error(f"❌ Could not prepare bucket '{self.bucket_name}': {e}", exc_info=True)
            return False

        logger.info(f"Created icon bucket '{self.bucket_name}'")
        return True


# Global storage service instance
storage_service = StorageService()
