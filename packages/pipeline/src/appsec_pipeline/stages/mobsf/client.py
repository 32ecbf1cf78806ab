from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import structlog

from appsec_pipeline.core import ExternalServiceError
from appsec_pipeline.core.http import make_http_client, request_with_retries, response_json

log = structlog.get_logger(__name__)


def make_mobsf_client(
    base_url: str,
    api_key: str | None,
    *,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    headers = {"Authorization": api_key} if api_key else None
    # scans of large APKs keep the connection busy for minutes
    timeout = httpx.Timeout(connect=5.0, read=900.0, write=300.0, pool=5.0)
    return make_http_client(
        base_url=base_url, headers=headers, timeout=timeout, transport=transport
    )


class MobSFClient:
    """
    MobSF REST API:
      POST /api/v1/upload        multipart file  -> {"hash": ...}
      POST /api/v1/scan          {scan_type, hash} -> scan result
      POST /api/v1/download_pdf  {hash}          -> PDF bytes
    """

    def __init__(self, client: httpx.Client, *, max_attempts: int = 3) -> None:
        self.client = client
        self.max_attempts = max_attempts

    def upload(self, path: Path) -> str:
        path = Path(path)

        def _files() -> dict[str, Any]:
            # rebuilt for every attempt
            return {
                "files": {
                    "file": (path.name, path.read_bytes(), "application/octet-stream")
                }
            }

        resp = request_with_retries(
            self.client,
            method="POST",
            url="/api/v1/upload",
            max_attempts=self.max_attempts,
            make_request_kwargs=_files,
        )
        obj = response_json(resp, what="mobsf upload")
        file_hash = obj.get("hash")
        if not isinstance(file_hash, str) or not file_hash:
            raise ExternalServiceError("mobsf upload: response has no hash")
        log.info("mobsf.uploaded", file=path.name, hash=file_hash)
        return file_hash

    def scan(self, file_hash: str, *, scan_type: str = "apk") -> dict[str, Any]:
        resp = request_with_retries(
            self.client,
            method="POST",
            url="/api/v1/scan",
            max_attempts=self.max_attempts,
            json={"scan_type": scan_type, "hash": file_hash},
        )
        return response_json(resp, what="mobsf scan")

    def download_pdf(self, file_hash: str) -> bytes:
        resp = request_with_retries(
            self.client,
            method="POST",
            url="/api/v1/download_pdf",
            max_attempts=self.max_attempts,
            json={"hash": file_hash},
        )
        data = resp.content
        if not data:
            raise ExternalServiceError("mobsf download_pdf: empty response")
        return data
