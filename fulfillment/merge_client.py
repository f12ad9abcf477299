"""Merge Client: concatenate archived label documents into one PDF.

Two backends:

* RemoteMergeClient posts the documents to an external merge service and
  receives the combined PDF as the response body. Documents travel either
  inline as base64 payloads (``{"files": [{"name", "data"}]}``) or as
  fetchable URLs (``{"urls": [...]}``) depending on the transport.
* LocalMergeClient downloads the documents and concatenates their pages
  with pypdf.

**Contract:**
- ``merge(document_ids, archive) -> bytes`` preserves the order of
  ``document_ids``.
- The merge is atomic from the caller's side: it returns one document or
  raises UpstreamError. No partial result exists.
- An empty input list raises ValueError before any network call.
"""

from __future__ import annotations

import base64
import io
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from .archive import ArchiveStore
from .enums import MergeBackend, MergeTransport
from .errors import FulfillmentError, UpstreamError

LOG = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


class MergeClient:
    def merge(self, document_ids: Sequence[str], archive: ArchiveStore) -> bytes:
        raise NotImplementedError


def _require_documents(document_ids: Sequence[str]) -> List[str]:
    ids = list(document_ids)
    if not ids:
        raise ValueError("No document ids provided for merge.")
    return ids


def download_documents(document_ids: Sequence[str], archive: ArchiveStore) -> List[bytes]:
    """Fetch each document's bytes from the archive, in order."""
    documents = []
    for position, file_id in enumerate(document_ids, start=1):
        try:
            data = archive.get(file_id)
        except FulfillmentError as exc:
            raise UpstreamError(f"Failed to download document {file_id}: {exc.message}") from exc
        LOG.info("Downloaded document %s/%s (%s, %s bytes)", position, len(document_ids), file_id, len(data))
        documents.append(data)
    return documents


class RemoteMergeClient(MergeClient):
    """External merge service client.

    Parameters
    ----------
    url : str
        Merge endpoint (POST, JSON body, PDF response).
    transport : MergeTransport
        BASE64 to post document bytes inline, URL to post download URLs.
    session : requests.Session, optional
        Plain session; the merge service is not authenticated.
    timeout : float
        Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        transport: MergeTransport = MergeTransport.BASE64,
        session: Optional[requests.Session] = None,
        timeout: float = 60,
    ):
        self.url = url
        self.transport = transport
        self.session = session or requests.Session()
        self.timeout = timeout

    def build_payload(self, document_ids: Sequence[str], archive: ArchiveStore) -> Dict[str, Any]:
        if self.transport is MergeTransport.URL:
            return {"urls": [archive.download_url(file_id) for file_id in document_ids]}

        documents = download_documents(document_ids, archive)
        return {
            "files": [
                {"name": f"{file_id}.pdf", "data": base64.b64encode(data).decode("ascii")}
                for file_id, data in zip(document_ids, documents)
            ]
        }

    def merge(self, document_ids: Sequence[str], archive: ArchiveStore) -> bytes:
        ids = _require_documents(document_ids)
        payload = self.build_payload(ids, archive)
        LOG.info(
            "Sending merge request to %s (%s document(s), transport=%s)",
            self.url,
            len(ids),
            self.transport.value,
        )

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamError(f"Merge service request failed: {exc}") from exc

        merged = response.content
        if not merged.startswith(PDF_MAGIC):
            raise UpstreamError("Merge service did not return a PDF document")
        LOG.info("Merge service returned PDF (%s bytes, status %s)", len(merged), response.status_code)
        return merged


class LocalMergeClient(MergeClient):
    """Concatenate documents in-process with pypdf."""

    def merge(self, document_ids: Sequence[str], archive: ArchiveStore) -> bytes:
        ids = _require_documents(document_ids)
        documents = download_documents(ids, archive)

        writer = PdfWriter()
        try:
            for data in documents:
                reader = PdfReader(io.BytesIO(data))
                for page in reader.pages:
                    writer.add_page(page)
        except (PyPdfError, ValueError) as exc:
            raise UpstreamError(f"Cannot merge unreadable PDF: {exc}") from exc

        output = io.BytesIO()
        writer.write(output)
        merged = output.getvalue()
        LOG.info("Merged %s document(s) locally (%s bytes)", len(ids), len(merged))
        return merged


def build_merge_client(config: Dict[str, Any], session: Optional[requests.Session] = None) -> MergeClient:
    """Create the merge client selected by ``merge.backend``."""
    merge_config = config.get("merge", {})
    backend = MergeBackend.from_string(merge_config.get("backend"))
    if backend is MergeBackend.LOCAL:
        return LocalMergeClient()
    return RemoteMergeClient(
        url=merge_config["url"],
        transport=MergeTransport.from_string(merge_config.get("transport")),
        session=session,
        timeout=config.get("http", {}).get("timeout_seconds", 60),
    )
