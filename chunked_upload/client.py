"""Uploads a file the way the browser uploader does: sliced into chunks of
at most ``maxChunkSize`` bytes, one request at a time, in order."""

import argparse
import logging
import mimetypes
import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)


class UploadFailed(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _failure(response) -> UploadFailed:
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    return UploadFailed(str(detail or response.text or "Upload failed"), response.status_code)


class ChunkedUploadClient:
    def __init__(self, base_url: str, token: str, session=None, retries: int = 3):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.retries = retries

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}"}
        if extra:
            headers.update(extra)
        return headers

    def fetch_config(self) -> Dict[str, Any]:
        response = self.session.get(f"{self.base_url}/upload/config", headers=self._headers())
        if response.status_code >= 400:
            raise _failure(response)
        return response.json()

    def status(self, filename: str, security_id: Optional[str]) -> Dict[str, Any]:
        response = self.session.get(
            f"{self.base_url}/upload/status",
            params={"filename": filename, "SecurityID": security_id},
            headers=self._headers(),
        )
        if response.status_code >= 400:
            raise _failure(response)
        return response.json()

    def _post(self, field: str, blob_name: str, data: bytes, content_type: str, form, headers):
        response = self.session.post(
            f"{self.base_url}/upload",
            headers=self._headers(headers),
            files={field: (blob_name, data, content_type)},
            data=form,
        )
        try:
            body = response.json()
        except ValueError:
            body = None
        # a one-element array, unless the framework answered itself
        if not isinstance(body, list) or not body:
            raise _failure(response)
        return response.status_code, body[0]

    def upload_file(self, path: str, chunk_size: Optional[int] = None) -> Dict[str, Any]:
        """Upload ``path`` and return the stored file's attributes."""
        config = self.fetch_config()
        chunk_size = chunk_size or config["maxChunkSize"]
        field = config["fieldName"]
        security_id = config.get("SecurityID")

        name = os.path.basename(path)
        file_size = os.path.getsize(path)
        file_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        form = {"SecurityID": security_id} if security_id else {}

        if file_size <= chunk_size:
            with open(path, "rb") as f:
                status_code, result = self._post(
                    field, name, f.read(), file_type, dict(form, filename=name), None
                )
            if "error" in result:
                raise UploadFailed(result["error"], status_code)
            return result

        logger.info("Uploading %s (%d bytes) in chunks of %d", name, file_size, chunk_size)
        offset = 0
        failures = 0
        with open(path, "rb") as f:
            while True:
                f.seek(offset)
                chunk_data = f.read(chunk_size)
                headers = {
                    "X-File-Name": quote(name),
                    "X-File-Size": str(file_size),
                    "X-File-Type": file_type,
                    "X-File-Offset": str(offset),
                    "X-Requested-With": "XMLHttpRequest",
                }
                status_code, result = self._post(
                    field, "blob", chunk_data, "application/octet-stream", form, headers
                )

                if "error" in result:
                    failures += 1
                    retryable = status_code == 409 or status_code >= 500
                    if not retryable or failures > self.retries:
                        raise UploadFailed(result["error"], status_code)
                    # the server tells us where it actually is
                    offset = result.get("expectedOffset", offset)
                    logger.warning("Chunk at %d failed (%s), retrying", offset, result["error"])
                    continue

                failures = 0
                if "ok" not in result:
                    return result
                offset = result["bytesWritten"]
                logger.debug("Uploaded %s", result["ok"])


def main():
    parser = argparse.ArgumentParser(description="Upload a file in chunks")
    parser.add_argument("path")
    parser.add_argument("--url", default="http://localhost:8000")
    parser.add_argument("--token", default=os.environ.get("UPLOAD_TOKEN"))
    parser.add_argument("--chunk-size", type=int, default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    client = ChunkedUploadClient(args.url, args.token)
    try:
        attributes = client.upload_file(args.path, chunk_size=args.chunk_size)
    except (UploadFailed, requests.RequestException) as e:
        print(f"Upload failed: {e}")
        raise SystemExit(1)
    print(f"Uploaded {attributes['name']} -> {attributes['url']} ({attributes['size']} bytes)")


if __name__ == "__main__":
    main()
