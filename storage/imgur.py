"""Imgur image host backend."""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from api.common import utcnow
from api.errors import RemoteFileNotFound, UnsupportedOperation
from api.models import TokenSet
from storage.base import BackendAdapter, RemoteFile, UploadTarget, read_file

logger = logging.getLogger(__name__)

API_URL = "https://api.imgur.com"

# Imgur access tokens are valid for a month
TOKEN_LIFETIME = timedelta(days=30)


class ImgurAdapter(BackendAdapter):
    token_url = f"{API_URL}/oauth2/token"
    rotates_refresh_token = True

    def _is_rate_limited(self, response) -> bool:
        # Imgur signals upload rate limits with 409
        return response.status_code in (409, 429)

    def _parse_token_response(self, payload: Dict[str, Any]) -> TokenSet:
        return TokenSet(
            access_token=payload["access_token"],
            expiry=utcnow() + TOKEN_LIFETIME,
            refresh_token=payload.get("refresh_token"),
        )

    async def upload(self, local_path: Path, name: str, mime_type: str, folder: Optional[str] = None) -> RemoteFile:
        op = await self._start()
        content = await read_file(local_path)
        form = {"name": name, "type": "file"}
        album = folder or self.backend.folder_id
        if album:
            form["album"] = album
        response = await self._request(
            op,
            "POST",
            f"{API_URL}/3/image",
            data=form,
            files={"image": (name, content, mime_type)},
        )
        data = response.json()["data"]
        return RemoteFile(
            remote_id=data["id"],
            name=data.get("name") or name,
            size=int(data.get("size", len(content))),
            mime_type=data.get("type", mime_type),
            url=data.get("link"),
        )

    async def create_upload_session(self, filename: str, folder: str, size: int, mime_type: str) -> UploadTarget:
        raise UnsupportedOperation("Imgur does not support resumable uploads", kind=self.kind)

    async def find_file(self, remote_id: str) -> RemoteFile:
        op = await self._start()
        response = await self._request(op, "GET", f"{API_URL}/3/image/{remote_id}", allow_not_found=True, retry=True)
        if response is None:
            raise RemoteFileNotFound(remote_id=remote_id)
        data = response.json()["data"]
        return RemoteFile(
            remote_id=data["id"],
            name=data.get("name") or data["id"],
            size=int(data.get("size", 0)),
            mime_type=data.get("type"),
            url=data.get("link"),
        )

    async def delete(self, remote_id: str) -> None:
        op = await self._start()
        await self._request(op, "DELETE", f"{API_URL}/3/image/{remote_id}", allow_not_found=True, retry=True)

    async def delete_folder(self, folder: str) -> None:
        # Imgur has no folders; a "folder" is an album id
        op = await self._start()
        await self._request(op, "DELETE", f"{API_URL}/3/album/{folder}", allow_not_found=True, retry=True)
