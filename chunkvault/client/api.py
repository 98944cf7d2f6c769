"""
Upload API Client
Speaks the chunked upload wire contract and maps responses onto the
error taxonomy in chunkvault.exceptions
"""

import logging
from typing import Optional, Dict, Any

import httpx

from chunkvault.config import settings
from chunkvault.exceptions import (
    AuthExpired,
    IncompleteOnComplete,
    MergeError,
    SessionInitError,
    TransferFailed,
)

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> Dict[str, Any]:
    try:
        detail = response.json().get("detail")
    except ValueError:
        return {"message": response.text}
    if isinstance(detail, dict):
        return detail
    return {"message": str(detail)}


class UploadApiClient:
    """Client for the upload server.

    ``http`` may be any ``httpx.Client``; when omitted one is created for
    ``base_url``. Every request carries ``timeout``.
    """

    def __init__(self, base_url: str = settings.API_BASE_URL, timeout: float = settings.REQUEST_TIMEOUT,
                 http: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.http = http or httpx.Client()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    def close(self):
        self.http.close()

    def init_upload(self, name: str, size: int, content_hash: str, total_parts: int,
                    parent_id: str = "", chunk_size: Optional[int] = None) -> Dict[str, Any]:
        payload = {
            "name": name,
            "size": size,
            "hash": content_hash,
            "total_parts": total_parts,
            "parent_id": parent_id,
        }
        if chunk_size:
            payload["chunk_size"] = chunk_size

        try:
            response = self.http.post(self._url("/upload/init"), json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransferFailed(f"Upload init request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise SessionInitError(f"Upload init request failed: {e}") from e

        if response.status_code != 200:
            detail = _detail(response)
            raise SessionInitError(
                f"Upload init rejected ({response.status_code}): {detail.get('message', detail)}"
            )
        return response.json()

    def get_session_status(self, session_id: str) -> Dict[str, Any]:
        try:
            response = self.http.get(
                self._url("/upload/status"), params={"session_id": session_id}, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise TransferFailed(f"Status request failed: {e}", session_id=session_id) from e

        if response.status_code != 200:
            raise TransferFailed(
                f"Status request rejected ({response.status_code}): {_detail(response)}", session_id=session_id
            )
        return response.json()

    def upload_part(self, session_id: str, part_number: int, data: bytes, credential: str):
        """Send one part; raises AuthExpired only for an expired credential"""
        try:
            response = self.http.post(
                self._url("/upload/part"),
                data={"session_id": session_id, "part_number": str(part_number)},
                files={"part": (f"part_{part_number}", data, "application/octet-stream")},
                headers={"X-Upload-Credential": credential or ""},
                timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise TransferFailed(
                f"Part {part_number} request failed: {e}", session_id=session_id, part_number=part_number
            ) from e

        if response.status_code == 200:
            return

        detail = _detail(response)
        if response.status_code == 401 and detail.get("code") == AuthExpired.code:
            raise AuthExpired("Upload credential expired", session_id=session_id, part_number=part_number)
        raise TransferFailed(
            f"Part {part_number} rejected ({response.status_code}): {detail.get('message', detail)}",
            session_id=session_id,
            part_number=part_number
        )

    def refresh_credential(self, session_id: str, content_hash: str) -> str:
        try:
            response = self.http.post(
                self._url("/upload/refresh-credential"),
                json={"session_id": session_id, "hash": content_hash},
                timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise TransferFailed(f"Credential refresh failed: {e}", session_id=session_id) from e

        if response.status_code != 200:
            raise TransferFailed(
                f"Credential refresh rejected ({response.status_code}): {_detail(response)}",
                session_id=session_id
            )
        return response.json()["credential"]

    def complete_upload(self, session_id: str, total_parts: int, content_hash: str) -> Dict[str, Any]:
        try:
            response = self.http.post(
                self._url("/upload/complete"),
                json={"session_id": session_id, "total_parts": total_parts, "hash": content_hash},
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise TransferFailed(f"Complete request timed out: {e}", session_id=session_id) from e
        except httpx.HTTPError as e:
            raise MergeError(f"Complete request failed: {e}", session_id=session_id) from e

        if response.status_code == 200:
            return response.json()["file"]

        detail = _detail(response)
        if response.status_code == 409 and detail.get("code") == IncompleteOnComplete.code:
            raise IncompleteOnComplete(
                detail.get("message", "Parts missing at completion"),
                session_id=session_id,
                missing_parts=detail.get("missing_parts", [])
            )
        raise MergeError(
            f"Complete rejected ({response.status_code}): {detail.get('message', detail)}",
            session_id=session_id
        )

    def abort_upload(self, session_id: str):
        response = self.http.post(
            self._url("/upload/abort"), json={"session_id": session_id}, timeout=self.timeout
        )
        response.raise_for_status()
