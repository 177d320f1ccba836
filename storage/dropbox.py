"""Dropbox backend (API v2)."""

import json
import logging
from pathlib import Path
from typing import Optional

from api.errors import RemoteFileNotFound
from config import ADAPTER_UPLOAD_TIMEOUT
from storage.base import BackendAdapter, RemoteFile, UploadTarget, read_file

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"

# Longest lifetime Dropbox allows for a temporary upload link (seconds)
UPLOAD_LINK_DURATION = 14400


def _raw_link(url: str) -> str:
    """Turn a shared link into one that serves the file itself."""
    if "dl=0" in url:
        return url.replace("dl=0", "raw=1")
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}raw=1"


class DropboxAdapter(BackendAdapter):
    token_url = "https://api.dropboxapi.com/oauth2/token"

    def _is_not_found(self, response) -> bool:
        # Dropbox reports lookup errors as 409 with an error summary
        if response.status_code == 404:
            return True
        return response.status_code == 409 and "not_found" in response.text

    def _path(self, *parts: Optional[str]) -> str:
        segments = [self.backend.folder_id, *parts]
        return "/" + "/".join(segment.strip("/") for segment in segments if segment)

    async def create_upload_session(self, filename: str, folder: str, size: int, mime_type: str) -> UploadTarget:
        op = await self._start()
        response = await self._request(
            op,
            "POST",
            f"{API_URL}/files/get_temporary_upload_link",
            json={
                "commit_info": {"path": self._path(folder, filename), "mode": "add", "autorename": True, "mute": False},
                "duration": UPLOAD_LINK_DURATION,
            },
        )
        return UploadTarget(upload_url=response.json()["link"], backend_id=self.backend.id)

    async def upload(self, local_path: Path, name: str, mime_type: str, folder: Optional[str] = None) -> RemoteFile:
        op = await self._start()
        content = await read_file(local_path)
        dropbox_arg = json.dumps({"path": self._path(folder, name), "mode": "add", "autorename": True, "mute": False})
        response = await self._request(
            op,
            "POST",
            f"{CONTENT_URL}/files/upload",
            content=content,
            headers={"Dropbox-API-Arg": dropbox_arg, "Content-Type": "application/octet-stream"},
            timeout=ADAPTER_UPLOAD_TIMEOUT,
        )
        data = response.json()

        link_response = await self._request(
            op,
            "POST",
            f"{API_URL}/sharing/create_shared_link_with_settings",
            json={
                "path": data["path_display"],
                "settings": {"audience": "public", "access": "viewer", "allow_download": True},
            },
        )
        return RemoteFile(
            remote_id=data["id"],
            name=data.get("name", name),
            size=int(data.get("size", len(content))),
            mime_type=mime_type,
            url=_raw_link(link_response.json()["url"]),
        )

    async def find_file(self, remote_id: str) -> RemoteFile:
        op = await self._start()
        response = await self._request(
            op,
            "POST",
            f"{API_URL}/files/get_metadata",
            json={"path": remote_id},
            allow_not_found=True,
            retry=True,
        )
        if response is None:
            raise RemoteFileNotFound(remote_id=remote_id)
        data = response.json()
        return RemoteFile(remote_id=data["id"], name=data["name"], size=int(data.get("size", 0)))

    async def delete(self, remote_id: str) -> None:
        op = await self._start()
        await self._request(
            op,
            "POST",
            f"{API_URL}/files/delete_v2",
            json={"path": remote_id},
            allow_not_found=True,
            retry=True,
        )

    async def delete_folder(self, folder: str) -> None:
        op = await self._start()
        await self._request(
            op,
            "POST",
            f"{API_URL}/files/delete_v2",
            json={"path": self._path(folder)},
            allow_not_found=True,
            retry=True,
        )
