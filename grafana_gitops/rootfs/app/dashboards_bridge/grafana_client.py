from __future__ import annotations

import logging
from typing import Any

import httpx

from . import settings
from .config_store import GrafanaOptions

logger = logging.getLogger(__name__)

SEARCH_PAGE_SIZE = 5000


class GrafanaError(Exception):
    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class NotFound(GrafanaError):
    pass


class VersionConflict(GrafanaError):
    pass


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(body, dict):
        return str(body.get("message") or body.get("status") or "")
    return ""


class GrafanaClient:
    """Blocking client for the parts of the Grafana HTTP API the bridge uses."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        username: str = "",
        password: str = "",
        skip_verify: bool = False,
        timeout: float = settings.DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {}
        auth: tuple[str, str] | None = None
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        elif username:
            auth = (username, password)
        self._http = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/api/",
            headers=headers,
            auth=auth,
            verify=not skip_verify,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_options(cls, options: GrafanaOptions) -> "GrafanaClient":
        return cls(
            options.base_url,
            api_key=options.api_key,
            username=options.username,
            password=options.password,
            skip_verify=options.skip_verify,
            timeout=options.timeout,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GrafanaClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        endpoint: str,
        payload: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        logger.debug("Querying the Grafana HTTP API: %s /api/%s", method, endpoint)
        try:
            response = self._http.request(method, endpoint, json=payload, params=params)
        except httpx.HTTPError as exc:
            raise GrafanaError(f"Grafana API unavailable: {exc}") from exc
        logger.debug("Grafana API response: %s /api/%s -> %s", method, endpoint, response.status_code)
        status = response.status_code
        if status == 404:
            raise NotFound(f"/api/{endpoint} not found (404)", status_code=404)
        if status in {409, 412}:
            raise VersionConflict(
                f"{method} /api/{endpoint} rejected ({status}): {_error_message(response)}",
                status_code=status,
            )
        if status >= 400:
            raise GrafanaError(
                f"{method} /api/{endpoint} failed ({status}): {_error_message(response)}",
                status_code=status,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise GrafanaError(f"/api/{endpoint} returned invalid JSON") from exc

    def search(self) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = self._request("GET", "search", params={"limit": SEARCH_PAGE_SIZE, "page": page})
            if not isinstance(batch, list):
                raise GrafanaError("Search response is not a list")
            results.extend(entry for entry in batch if isinstance(entry, dict))
            if len(batch) < SEARCH_PAGE_SIZE:
                return results
            page += 1

    def get_dashboard(self, uid: str) -> dict[str, Any]:
        data = self._request("GET", f"dashboards/uid/{uid}")
        if not isinstance(data, dict) or not isinstance(data.get("dashboard"), dict):
            raise GrafanaError(f"Dashboard {uid} response has no dashboard body")
        return data

    def create_or_update_dashboard(
        self,
        body: dict[str, Any],
        folder_uid: str = "",
        folder_id: int | None = None,
        version: int | None = None,
    ) -> int:
        """Upsert a dashboard and return the version Grafana assigned.

        Without ``version`` the write overwrites whatever is stored. With it,
        Grafana rejects the write with a version mismatch unless the stored
        dashboard is still at that version.
        """

        dashboard = dict(body)
        dashboard["id"] = None
        payload: dict[str, Any] = {"dashboard": dashboard, "folderUid": folder_uid}
        if version is None:
            dashboard.pop("version", None)
            payload["overwrite"] = True
        else:
            dashboard["version"] = version
            payload["overwrite"] = False
        if folder_id is not None:
            payload["folderId"] = folder_id
        data = self._request("POST", "dashboards/db", payload)
        if not isinstance(data, dict):
            return 0
        return int(data.get("version") or 0)

    def delete_dashboard(self, uid: str) -> None:
        self._request("DELETE", f"dashboards/uid/{uid}")

    def list_library_elements(self) -> list[dict[str, Any]]:
        elements: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                "library-elements",
                params={"perPage": settings.LIBRARY_PAGE_SIZE, "page": page},
            )
            result = data.get("result") if isinstance(data, dict) else None
            if not isinstance(result, dict):
                raise GrafanaError("Library elements response has no result")
            batch = result.get("elements") or []
            elements.extend(entry for entry in batch if isinstance(entry, dict))
            total = result.get("totalCount")
            if not batch or not isinstance(total, int) or len(elements) >= total:
                return elements
            page += 1

    def create_or_update_library(
        self,
        element: dict[str, Any],
        folder_uid: str = "",
        folder_id: int = 0,
        version: int = 0,
    ) -> int:
        """Create a library element, or patch it when the uid already exists.

        Patching requires ``version`` to match the version stored in Grafana.
        """

        payload = {
            "uid": element.get("uid"),
            "name": element.get("name"),
            "kind": element.get("kind", 1),
            "model": element.get("model") or {},
            "folderUid": folder_uid,
            "folderId": folder_id,
        }
        try:
            data = self._request("POST", "library-elements", payload)
        except GrafanaError as exc:
            # an existing uid or name is reported as 400 (older) or 409 (newer)
            if exc.status_code not in {400, 409}:
                raise
            logger.info("Library element %s exists, patching: %s", payload["uid"], exc)
            data = self._request(
                "PATCH", f"library-elements/{payload['uid']}", {**payload, "version": version}
            )
        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, dict):
            return 0
        return int(result.get("version") or 0)

    def delete_library(self, uid: str) -> None:
        self._request("DELETE", f"library-elements/{uid}")

    def list_folders(self) -> list[dict[str, Any]]:
        data = self._request("GET", "folders", params={"limit": 1000})
        if not isinstance(data, list):
            raise GrafanaError("Folders response is not a list")
        return [entry for entry in data if isinstance(entry, dict)]

    def create_or_update_folder(self, uid: str, title: str, parent_uid: str = "") -> None:
        payload: dict[str, Any] = {"uid": uid, "title": title}
        if parent_uid:
            payload["parentUid"] = parent_uid
        try:
            self._request("POST", "folders", payload)
        except GrafanaError as exc:
            logger.info("Creating folder %s failed (%s), updating it instead", uid, exc)
            self._request("PUT", f"folders/{uid}", {"title": title, "overwrite": True})

    def delete_folder(self, uid: str) -> None:
        """Delete a folder. Grafana deletes every dashboard inside it too."""

        self._request("DELETE", f"folders/{uid}")
