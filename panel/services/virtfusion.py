import time
import logging
from dataclasses import dataclass
import httpx
from panel.core.config import get_settings


settings = get_settings()
logger = logging.getLogger(__name__)


class VirtFusionApiError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, raw: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw = raw

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_transient(self) -> bool:
        # No status code means the panel was never reached (timeout, connection reset).
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


@dataclass
class HypervisorUser:
    id: int
    ext_relation_id: str | None
    email: str | None = None
    name: str | None = None
    enabled: bool = True


def parse_user(row: dict) -> HypervisorUser | None:
    if not isinstance(row, dict) or row.get("id") in (None, ""):
        return None
    ext_relation_id = row.get("extRelationId", row.get("ext_relation_id"))
    return HypervisorUser(
        id=int(row["id"]),
        ext_relation_id=str(ext_relation_id) if ext_relation_id not in (None, "") else None,
        email=row.get("email"),
        name=row.get("name"),
        enabled=bool(row.get("enabled", True)),
    )


def normalize_panel_url(raw_url: str) -> str:
    url = str(raw_url or "").strip().rstrip("/")
    if url.endswith("/api/v1"):
        url = url[: -len("/api/v1")]
    return url


class VirtFusionClient:
    def __init__(self, *, transport: httpx.BaseTransport | None = None, sleep=time.sleep):
        self.base_url = normalize_panel_url(settings.virtfusion_panel_url)
        self.api_token = settings.virtfusion_api_token
        self.timeout = settings.virtfusion_timeout_seconds
        self.retry_count = settings.virtfusion_retry_count
        self._transport = transport
        self._sleep = sleep

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _extract_error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict):
            for key in ("msg", "message", "error", "errors"):
                value = data.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
                if isinstance(value, list) and value:
                    first = value[0]
                    if isinstance(first, str) and first.strip():
                        return first.strip()
        text = (response.text or "").strip()
        return text[:300] if text else f"HTTP {response.status_code}"

    def _request(self, method: str, path: str, payload: dict | None = None, *, params: dict | None = None) -> dict:
        url = f"{self.base_url}/api/v1{path}"
        last_exc = None
        for attempt in range(self.retry_count + 1):
            start = time.time()
            try:
                with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                    response = client.request(method, url, json=payload, params=params, headers=self._headers())
                duration_ms = round((time.time() - start) * 1000, 2)
                logger.info("VirtFusion API %s %s status=%s duration=%sms", method, path, response.status_code, duration_ms)
                if response.status_code >= 400:
                    message = self._extract_error_message(response)
                    raise VirtFusionApiError(message, status_code=response.status_code, raw=response.text)
                if response.status_code == 204 or not response.content:
                    return {}
                try:
                    return response.json()
                except ValueError as exc:
                    raise VirtFusionApiError("VirtFusion returned invalid JSON response.", status_code=response.status_code, raw=response.text) from exc
            except VirtFusionApiError as exc:
                last_exc = exc
                # Client errors (including 404) are definitive.
                if not exc.is_transient:
                    raise
                if attempt < self.retry_count:
                    self._sleep(0.5 * (attempt + 1))
                    continue
                raise
            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
                last_exc = VirtFusionApiError("Unable to reach VirtFusion panel.", raw=str(exc))
                if attempt < self.retry_count:
                    self._sleep(0.5 * (attempt + 1))
                    continue
                raise last_exc from exc
        raise last_exc

    def suspend_server(self, server_id: str) -> None:
        self._request("POST", f"/servers/{server_id}/suspend")
        logger.info("Suspended VirtFusion server %s", server_id)

    def unsuspend_server(self, server_id: str) -> None:
        self._request("POST", f"/servers/{server_id}/unsuspend")
        logger.info("Unsuspended VirtFusion server %s", server_id)

    def server_exists(self, server_id: str) -> bool:
        try:
            self._request("GET", f"/servers/{server_id}")
        except VirtFusionApiError as exc:
            if exc.is_not_found:
                return False
            raise
        return True

    def delete_server(self, server_id: str) -> bool:
        """Delete a server. Returns False when the panel no longer knows it."""
        try:
            self._request("DELETE", f"/servers/{server_id}", params={"delay": 0})
        except VirtFusionApiError as exc:
            if exc.is_not_found:
                logger.info("VirtFusion server %s already deleted", server_id)
                return False
            raise
        return True

    def list_users(self, page: int = 1, page_size: int | None = None) -> tuple[list[HypervisorUser], bool]:
        """One page of panel users and whether another page follows."""
        size = page_size or settings.virtfusion_users_page_size
        payload = self._request("GET", "/users", params={"page": page, "results": size})
        rows = payload.get("data") or []
        users = [user for user in (parse_user(row) for row in rows) if user]
        current = int(payload.get("current_page") or page)
        last = payload.get("last_page")
        if last is None:
            has_more = len(rows) >= size
        else:
            has_more = current < int(last)
        return users, has_more

    def list_servers_for_user(self, user_id: int) -> list[dict]:
        try:
            payload = self._request("GET", f"/servers/user/{user_id}")
        except VirtFusionApiError as exc:
            if exc.is_not_found:
                return []
            raise
        return [row for row in (payload.get("data") or []) if isinstance(row, dict)]

    def delete_user(self, user_id: int, *, delete_servers: bool = True) -> int:
        """Delete a panel user, optionally deleting their servers first.

        Returns the number of servers deleted. A user that is already gone is
        not an error.
        """
        servers_deleted = 0
        if delete_servers:
            for server in self.list_servers_for_user(user_id):
                if self.delete_server(str(server.get("id"))):
                    servers_deleted += 1
        try:
            self._request("DELETE", f"/users/{user_id}")
        except VirtFusionApiError as exc:
            if not exc.is_not_found:
                raise
            logger.info("VirtFusion user %s already deleted", user_id)
        logger.info("Deleted VirtFusion user %s and %s server(s)", user_id, servers_deleted)
        return servers_deleted
