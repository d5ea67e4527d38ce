"""
Asset upload client used by the directory watcher.

Files picked up from disk have no HTTP request to piggyback on, so they are
posted to the Immich asset API directly with an API key.
"""

from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx

from .errors import AssetUploadError

logger = logging.getLogger(__name__)

ASSET_UPLOAD_PATH = "/api/assets"


class AssetUploader:
    """
    Uploads local files as assets.

    Args:
        base_url: Upstream root, e.g. ``http://immich-server:2283``
        api_key: Key sent in the ``x-api-key`` header
        device_id: Identifies this proxy as the uploading device
        timeout: Seconds per network operation
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        device_id: str = "upload-optimizer",
        timeout: Optional[float] = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"x-api-key": api_key, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def upload(self, path: Path, filename: Optional[str] = None) -> None:
        """
        Upload a file.

        Args:
            path: Local file to send
            filename: Name to present upstream (defaults to the file's own name)

        Raises:
            AssetUploadError: On transport failure or a non-2xx response
        """
        filename = filename or path.name
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            stat = path.stat()
            modified_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
            data = {
                "deviceAssetId": f"{filename}-{stat.st_size}",
                "deviceId": self.device_id,
                "fileCreatedAt": modified_at,
                "fileModifiedAt": modified_at,
            }
            with path.open("rb") as handle:
                response = self._client.post(
                    ASSET_UPLOAD_PATH,
                    data=data,
                    files={"assetData": (filename, handle, content_type)},
                )
        except (OSError, httpx.HTTPError) as exc:
            raise AssetUploadError(f"unable to upload {path}: {exc}") from exc

        if not response.is_success:
            raise AssetUploadError(f"upload of {path} rejected with status {response.status_code}: {response.text[:500]}")

        logger.info(f"uploaded {filename} (status {response.status_code})")

    def close(self) -> None:
        self._client.close()
