"""Google Drive backend (Drive API v3, shared drives supported)."""

import logging
from pathlib import Path
from typing import Optional

from api.errors import BackendRequestFailed, RemoteFileNotFound
from storage.base import BackendAdapter, RemoteFile, UploadTarget, read_file

logger = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class GoogleDriveAdapter(BackendAdapter):
    token_url = "https://www.googleapis.com/oauth2/v4/token"

    def _is_rate_limited(self, response) -> bool:
        if response.status_code == 429:
            return True
        # Drive reports per-user quota exhaustion as 403 with a rate limit reason
        if response.status_code == 403:
            return "ratelimitexceeded" in response.text.lower()
        return False

    async def _create_folder(self, op, name: str) -> str:
        metadata = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if self.backend.folder_id:
            metadata["parents"] = [self.backend.folder_id]
        response = await self._request(
            op,
            "POST",
            f"{DRIVE_API}/files",
            params={"supportsAllDrives": "true"},
            json=metadata,
        )
        return response.json()["id"]

    async def _start_resumable(
        self, op, filename: str, parent_id: Optional[str], size: Optional[int], mime_type: str
    ) -> str:
        headers = {"X-Upload-Content-Type": mime_type}
        metadata = {"name": filename}
        if parent_id:
            metadata["parents"] = [parent_id]
        if size is not None:
            headers["X-Upload-Content-Length"] = str(size)
        response = await self._request(
            op,
            "POST",
            f"{DRIVE_UPLOAD_API}/files",
            params={"uploadType": "resumable", "supportsAllDrives": "true"},
            json=metadata,
            headers=headers,
        )
        location = response.headers.get("location")
        if not location:
            raise BackendRequestFailed("Google Drive did not return a resumable upload URL")
        return location

    async def create_upload_session(self, filename: str, folder: str, size: int, mime_type: str) -> UploadTarget:
        op = await self._start()
        folder_id = await self._create_folder(op, folder)
        upload_url = await self._start_resumable(op, filename, folder_id, size, mime_type)
        return UploadTarget(upload_url=upload_url, backend_id=self.backend.id)

    async def upload(self, local_path: Path, name: str, mime_type: str, folder: Optional[str] = None) -> RemoteFile:
        op = await self._start()
        content = await read_file(local_path)
        parent_id = await self._create_folder(op, folder) if folder else self.backend.folder_id
        upload_url = await self._start_resumable(op, name, parent_id, len(content), mime_type)
        response = await self._request(
            op,
            "PUT",
            upload_url,
            content=content,
            headers={"Content-Type": mime_type},
        )
        data = response.json()
        return RemoteFile(remote_id=data["id"], name=data.get("name", name), size=len(content), mime_type=mime_type)

    async def find_file(self, remote_id: str) -> RemoteFile:
        op = await self._start()
        response = await self._request(
            op,
            "GET",
            f"{DRIVE_API}/files/{remote_id}",
            params={"fields": "id,name,size,mimeType", "supportsAllDrives": "true"},
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
            mime_type=data.get("mimeType"),
        )

    async def delete(self, remote_id: str) -> None:
        op = await self._start()
        await self._request(
            op,
            "DELETE",
            f"{DRIVE_API}/files/{remote_id}",
            params={"supportsAllDrives": "true"},
            allow_not_found=True,
            retry=True,
        )

    async def delete_folder(self, folder: str) -> None:
        op = await self._start()
        query = f"mimeType = '{FOLDER_MIME_TYPE}' and name = '{folder}' and trashed = false"
        if self.backend.folder_id:
            query = f"'{self.backend.folder_id}' in parents and {query}"
        response = await self._request(
            op,
            "GET",
            f"{DRIVE_API}/files",
            params={
                "q": query,
                "fields": "files(id)",
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
            },
            retry=True,
        )
        folders = response.json().get("files", [])
        for item in folders:
            await self._request(
                op,
                "DELETE",
                f"{DRIVE_API}/files/{item['id']}",
                params={"supportsAllDrives": "true"},
                allow_not_found=True,
                retry=True,
            )
        logger.debug(f"Deleted {len(folders)} Google Drive folder(s) named {folder}")
