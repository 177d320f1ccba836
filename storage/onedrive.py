"""OneDrive backend (Microsoft Graph)."""

import logging
from pathlib import Path
from typing import Optional

from api.errors import RemoteFileNotFound
from config import ADAPTER_UPLOAD_CHUNK_SIZE, ADAPTER_UPLOAD_TIMEOUT
from storage.base import BackendAdapter, RemoteFile, UploadTarget, read_file

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.microsoft.com/v1.0"

# Upload session chunks must be a multiple of 320 KiB
CHUNK_ALIGNMENT = 327680


class OneDriveAdapter(BackendAdapter):
    token_url = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    rotates_refresh_token = True

    @property
    def _root(self) -> str:
        if self.backend.folder_id:
            return f"{GRAPH_API}/me/drive/items/{self.backend.folder_id}"
        return f"{GRAPH_API}/me/drive/root"

    async def _create_session(self, op, filename: str, folder: Optional[str]) -> str:
        item_path = f"{folder}/{filename}" if folder else filename
        response = await self._request(
            op,
            "POST",
            f"{self._root}:/{item_path}:/createUploadSession",
            json={"item": {"@microsoft.graph.conflictBehavior": "rename"}},
        )
        return response.json()["uploadUrl"]

    async def create_upload_session(self, filename: str, folder: str, size: int, mime_type: str) -> UploadTarget:
        op = await self._start()
        upload_url = await self._create_session(op, filename, folder)
        return UploadTarget(upload_url=upload_url, backend_id=self.backend.id)

    async def upload(self, local_path: Path, name: str, mime_type: str, folder: Optional[str] = None) -> RemoteFile:
        op = await self._start()
        content = await read_file(local_path)
        if not content:
            # Upload sessions cannot carry an empty range
            item_path = f"{folder}/{name}" if folder else name
            response = await self._request(
                op,
                "PUT",
                f"{self._root}:/{item_path}:/content",
                params={"@microsoft.graph.conflictBehavior": "rename"},
                content=b"",
                headers={"Content-Type": mime_type},
            )
            data = response.json()
            return RemoteFile(remote_id=data["id"], name=data.get("name", name), size=0, mime_type=mime_type)

        upload_url = await self._create_session(op, name, folder)

        chunk_size = max(CHUNK_ALIGNMENT, ADAPTER_UPLOAD_CHUNK_SIZE - ADAPTER_UPLOAD_CHUNK_SIZE % CHUNK_ALIGNMENT)
        total = len(content)
        offset = 0
        while True:
            chunk = content[offset : offset + chunk_size]
            end = offset + len(chunk) - 1
            # Upload URLs are pre-authorized; Graph rejects a bearer token on them
            response = await self._request(
                op,
                "PUT",
                upload_url,
                authorized=False,
                content=chunk,
                headers={"Content-Range": f"bytes {offset}-{end}/{total}", "Content-Length": str(len(chunk))},
                timeout=ADAPTER_UPLOAD_TIMEOUT,
            )
            offset += len(chunk)
            if offset >= total:
                break

        data = response.json()
        return RemoteFile(
            remote_id=data["id"],
            name=data.get("name", name),
            size=int(data.get("size", total)),
            mime_type=mime_type,
        )

    async def find_file(self, remote_id: str) -> RemoteFile:
        op = await self._start()
        response = await self._request(
            op,
            "GET",
            f"{GRAPH_API}/me/drive/items/{remote_id}",
            params={"select": "id,name,file,parentReference,size"},
            allow_not_found=True,
            retry=True,
        )
        if response is None:
            raise RemoteFileNotFound(remote_id=remote_id)
        data = response.json()
        return RemoteFile(
            remote_id=data["id"],
            name=data["name"],
            size=int(data.get("size", 0)),
            mime_type=(data.get("file") or {}).get("mimeType"),
        )

    async def delete(self, remote_id: str) -> None:
        op = await self._start()
        await self._request(
            op,
            "DELETE",
            f"{GRAPH_API}/me/drive/items/{remote_id}",
            allow_not_found=True,
            retry=True,
        )

    async def delete_folder(self, folder: str) -> None:
        op = await self._start()
        await self._request(op, "DELETE", f"{self._root}:/{folder}", allow_not_found=True, retry=True)
