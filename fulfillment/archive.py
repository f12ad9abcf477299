"""Archive Client: binary documents in a remote content store.

Documents are addressed by opaque ids handed out by the store. Production
uses Google Drive (v3 REST) through an authorized ``requests`` session;
rendered labels and merged documents are uploaded into configured folders.

**Contract:**
- ``create(name, mime_type, data, parent) -> StoredDocument(id, url)``
- ``get(file_id) -> bytes``
- ``delete(file_id)``
- ``download_url(file_id) -> str``: a URL the merge service can fetch
- Transport/HTTP failures raise UpstreamError; no retries.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Dict, Optional

import requests

from .data_models import StoredDocument
from .errors import NotFoundError, UpstreamError

LOG = logging.getLogger(__name__)

DRIVE_FILES_API = "https://www.googleapis.com/drive/v3/files"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3/files"
PDF_MIME_TYPE = "application/pdf"


class ArchiveStore:
    """Interface shared by the Drive client and the in-memory archive."""

    def create(self, name: str, mime_type: str, data: bytes, parent: Optional[str]) -> StoredDocument:
        raise NotImplementedError

    def get(self, file_id: str) -> bytes:
        raise NotImplementedError

    def delete(self, file_id: str) -> None:
        raise NotImplementedError

    def download_url(self, file_id: str) -> str:
        raise NotImplementedError


def build_multipart_body(metadata: Dict[str, Any], data: bytes, mime_type: str) -> tuple[bytes, str]:
    """Encode a Drive ``uploadType=multipart`` body; returns (body, content_type)."""
    boundary = f"==={uuid.uuid4().hex}==="
    body = b"".join(
        [
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode("utf-8"),
            f"\r\n--{boundary}\r\n".encode(),
            f"Content-Type: {mime_type}\r\n\r\n".encode(),
            data,
            f"\r\n--{boundary}--\r\n".encode(),
        ]
    )
    return body, f"multipart/related; boundary={boundary}"


class DriveArchive(ArchiveStore):
    """Google Drive backed archive (shared drives supported)."""

    def __init__(self, session: requests.Session, timeout: float = 60):
        self.session = session
        self.timeout = timeout

    def _send(self, method: str, url: str, action: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamError(f"Archive {action} failed: {exc}") from exc
        if response.status_code == 404:
            raise NotFoundError(f"Archive {action} failed: document not found")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise UpstreamError(f"Archive {action} failed: {exc}") from exc
        return response

    def create(self, name: str, mime_type: str, data: bytes, parent: Optional[str]) -> StoredDocument:
        metadata: Dict[str, Any] = {"name": name, "mimeType": mime_type}
        if parent:
            metadata["parents"] = [parent]
        body, content_type = build_multipart_body(metadata, data, mime_type)

        response = self._send(
            "POST",
            DRIVE_UPLOAD_API,
            "upload",
            params={
                "uploadType": "multipart",
                "supportsAllDrives": "true",
                "fields": "id,name,webViewLink,webContentLink",
            },
            data=body,
            headers={"Content-Type": content_type},
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Archive upload returned invalid JSON: {exc}") from exc

        file_id = payload.get("id")
        if not file_id:
            raise UpstreamError("Archive upload returned no document id")
        url = payload.get("webViewLink") or payload.get("webContentLink") or ""
        LOG.info("Uploaded %s (%s bytes) as %s", name, len(data), file_id)
        return StoredDocument(id=file_id, url=url, name=payload.get("name", name))

    def get(self, file_id: str) -> bytes:
        response = self._send(
            "GET",
            f"{DRIVE_FILES_API}/{file_id}",
            "download",
            params={"alt": "media", "supportsAllDrives": "true"},
        )
        return response.content

    def delete(self, file_id: str) -> None:
        self._send(
            "DELETE",
            f"{DRIVE_FILES_API}/{file_id}",
            "delete",
            params={"supportsAllDrives": "true"},
        )
        LOG.info("Deleted archived document %s", file_id)

    def download_url(self, file_id: str) -> str:
        return f"https://drive.google.com/uc?export=download&id={file_id}"


class InMemoryArchive(ArchiveStore):
    """Archive held in memory; used for tests and offline dry runs."""

    def __init__(self, base_url: str = "https://archive.invalid/d"):
        self.base_url = base_url
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.deleted: list[str] = []
        self._counter = 0
        self._lock = threading.Lock()

    def create(self, name: str, mime_type: str, data: bytes, parent: Optional[str]) -> StoredDocument:
        with self._lock:
            self._counter += 1
            file_id = f"doc-{self._counter:04d}"
        self.documents[file_id] = {
            "name": name,
            "mime_type": mime_type,
            "data": bytes(data),
            "parent": parent,
        }
        return StoredDocument(id=file_id, url=f"{self.base_url}/{file_id}/view", name=name)

    def get(self, file_id: str) -> bytes:
        try:
            return self.documents[file_id]["data"]
        except KeyError:
            raise NotFoundError(f"Archive download failed: document {file_id} not found") from None

    def delete(self, file_id: str) -> None:
        if file_id not in self.documents:
            raise NotFoundError(f"Archive delete failed: document {file_id} not found")
        del self.documents[file_id]
        self.deleted.append(file_id)

    def download_url(self, file_id: str) -> str:
        return f"{self.base_url}/{file_id}/download"

    def in_folder(self, parent: str) -> Dict[str, Dict[str, Any]]:
        return {
            file_id: doc for file_id, doc in self.documents.items() if doc["parent"] == parent
        }
