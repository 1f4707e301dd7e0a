"""Storage server API client.

Every call carries the bearer credential of the storage server. Transport
errors and non-2xx answers surface as :class:`StorageServerError`; there is no
partial-success contract.
"""
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from .errors import StorageServerError


class StorageServerClient:
    """HTTP client for the external storage/encoding server."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: Optional[float] = 600.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._http = httpx.Client(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        """Close HTTP client."""
        self._http.close()

    def __enter__(self) -> "StorageServerClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Storage server {} {} failed: {} - {}",
                method, path, exc.response.status_code, exc.response.text,
            )
            raise StorageServerError(
                f"Storage server returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Storage server {} {} failed: {!r}", method, path, exc)
            raise StorageServerError(f"Storage server unreachable: {exc}") from exc
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise StorageServerError("Storage server returned invalid JSON") from exc
        return body if isinstance(body, dict) else {}

    def receive(self, path: Path, owner_email: str, file_name: str, privacy: str) -> Optional[str]:
        """
        Transfer a staged file.

        POST /receive?userEmail=<owner>
        """
        with open(path, "rb") as stream:
            response = self._request(
                "POST",
                "/receive",
                params={"userEmail": owner_email},
                headers={"X-User-Email": owner_email},
                data={"userEmail": owner_email, "filename": file_name, "privacy": privacy},
                files={"file": (file_name, stream, "application/octet-stream")},
            )
        return self._json(response).get("token")

    def rename_file(self, token: str, new_name: str, owner_email: str) -> Optional[str]:
        """
        Rename a stored file.

        POST /rename-file
        """
        response = self._request(
            "POST",
            "/rename-file",
            json={"token": token, "newFileName": new_name, "userEmail": owner_email},
        )
        return self._json(response).get("token")

    def delete_file(
        self,
        owner_email: str,
        token: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> None:
        """
        Delete a stored file, addressed by token or by file name.

        DELETE /delete-file
        """
        body: Dict[str, Any] = {"userEmail": owner_email}
        if token is not None:
            body["token"] = token
        if file_name is not None:
            body["fileName"] = file_name
        self._request("DELETE", "/delete-file", json=body)

    def fetch_thumbnail(self, token: str) -> bytes:
        """GET /api/thumbnail/{token}"""
        return self._request("GET", f"/api/thumbnail/{token}").content

    def issue_token(self, file_name: str, owner_email: str) -> Optional[str]:
        """
        Ask the server for the token of an already stored file.

        POST /request-token
        """
        response = self._request(
            "POST",
            "/request-token",
            json={"filePath": file_name, "userEmail": owner_email},
        )
        return self._json(response).get("token")

    def download_url(self, token: str) -> str:
        return f"{self._base_url}/api/initiate-download/{token}"
