import logging
from typing import Any, Optional

import cloudinary
import cloudinary.uploader

from config import mask
from errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ImageHost:
    """Cloudinary-backed image storage. upload() returns {url, public_id}."""

    def __init__(self, settings):
        self.folder = settings.cloudinary_folder
        self.timeout = settings.cloudinary_timeout
        self.configured = bool(
            settings.cloudinary_cloud_name and settings.cloudinary_api_key and settings.cloudinary_api_secret
        )
        if self.configured:
            cloudinary.config(
                cloud_name=settings.cloudinary_cloud_name,
                api_key=settings.cloudinary_api_key,
                api_secret=settings.cloudinary_api_secret,
                secure=True,
            )
            logger.info("Cloudinary configured: cloud=%s key=%s",
                        settings.cloudinary_cloud_name, mask(settings.cloudinary_api_key))
        else:
            logger.error("Cloudinary config missing (cloud=%s key=%s secret=%s); image uploads will fail",
                         settings.cloudinary_cloud_name or "missing",
                         mask(settings.cloudinary_api_key), mask(settings.cloudinary_api_secret))

    def upload(self, file: Any, folder: Optional[str] = None) -> dict:
        if not self.configured:
            raise ExternalServiceError("Cloudinary", "image host is not configured")
        try:
            result = cloudinary.uploader.upload(
                file,
                resource_type="image",
                folder=folder or self.folder,
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.exception("Cloudinary upload failed")
            raise ExternalServiceError("Cloudinary", f"upload failed: {exc}")
        return {"url": str(result["secure_url"]), "public_id": str(result["public_id"])}

    def destroy(self, public_id: Optional[str]) -> bool:
        """Best-effort delete; returns False instead of raising."""
        if not public_id or not self.configured:
            return False
        try:
            result = cloudinary.uploader.destroy(public_id, timeout=self.timeout)
        except Exception:
            logger.warning("Cloudinary destroy failed for %s", public_id, exc_info=True)
            return False
        return (result or {}).get("result") == "ok"
