"""Cloudflare API client — zone, DNS record and IP list operations."""

import logging
from typing import Any

import requests

from cfddns.config import (
    BULK_OPERATION_POLL_SECONDS,
    CLOUDFLARE_API_BASE,
    REQUEST_TIMEOUT_SECONDS,
)
from cfddns.core.cancel import Cancelled, Context

logger = logging.getLogger(__name__)

# Maximum attempts on 429 (rate-limited) responses
_MAX_RETRIES = 5
_BACKOFF_BASE = 1.0  # seconds

# Cloudflare error codes meaning "authentication/authorization failed"
_PERMISSION_ERROR_CODES = {9109, 10000}


class CloudflareAPIError(Exception):
    """Raised when a Cloudflare API call fails."""

    def __init__(self, status_code: int, errors: list[dict]):
        self.status_code = status_code
        self.errors = errors
        messages = "; ".join(e.get("message", str(e)) for e in errors)
        super().__init__(f"Cloudflare API error ({status_code}): {messages}")

    @property
    def is_permission_error(self) -> bool:
        if self.status_code in (401, 403):
            return True
        return any(e.get("code") in _PERMISSION_ERROR_CODES for e in self.errors)


class CloudflareClient:
    """Thin wrapper around the Cloudflare v4 REST API.

    The *token* is accepted per-method call so it never needs to be stored
    as instance state. Methods return plain dicts; interpretation is left
    to :class:`cfddns.core.cloudflare_handle.CloudflareHandle`.
    """

    def __init__(self, base_url: str = CLOUDFLARE_API_BASE) -> None:
        self._session = requests.Session()
        self._base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        ctx: Context | None = None,
        params: dict | None = None,
        json_body: Any = None,
    ) -> Any:
        """Execute an API call, backing off on 429 within the context's deadline.

        Other failures are not retried; the caller decides what to do.
        """
        url = f"{self._base_url}{path}"
        headers = self._headers(token)
        ctx = ctx or Context.background()

        for attempt in range(_MAX_RETRIES):
            try:
                ctx.check()
            except Cancelled as exc:
                raise CloudflareAPIError(0, [{"message": str(exc)}]) from exc

            timeout = REQUEST_TIMEOUT_SECONDS
            remaining = ctx.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining)

            try:
                resp = self._session.request(
                    method, url, headers=headers, params=params, json=json_body, timeout=timeout
                )
            except requests.Timeout as exc:
                raise CloudflareAPIError(0, [{"message": f"Request timed out: {exc}"}]) from exc
            except requests.RequestException as exc:
                raise CloudflareAPIError(0, [{"message": f"Connection failed: {exc}"}]) from exc

            if resp.status_code == 429:
                wait = _BACKOFF_BASE * (2 ** attempt)
                retry_after = resp.headers.get("Retry-After")
                if retry_after:
                    try:
                        wait = max(wait, float(retry_after))
                    except ValueError:
                        pass
                logger.warning("Rate-limited by Cloudflare, retrying in %.1fs", wait)
                try:
                    ctx.sleep(wait)
                except Cancelled as exc:
                    raise CloudflareAPIError(429, [{"message": "Rate-limited until the deadline"}]) from exc
                continue

            try:
                data = resp.json()
            except ValueError as exc:
                raise CloudflareAPIError(
                    resp.status_code, [{"message": f"Invalid JSON response: {exc}"}]
                ) from exc
            if not data.get("success", False):
                raise CloudflareAPIError(resp.status_code, data.get("errors") or [])
            return data

        raise CloudflareAPIError(429, [{"message": "Rate-limit retries exhausted"}])

    def _paginate(self, path: str, token: str, *, ctx: Context | None, params: dict, per_page: int) -> list[dict]:
        """Collect ``result`` across page-numbered responses."""
        results: list[dict] = []
        page = 1
        while True:
            data = self._request(
                "GET", path, token, ctx=ctx, params={**params, "page": page, "per_page": per_page}
            )
            results.extend(data.get("result") or [])
            info = data.get("result_info") or {}
            if page >= info.get("total_pages", 1):
                break
            page += 1
        return results

    # ------------------------------------------------------------------
    # Token verification
    # ------------------------------------------------------------------

    def verify_token(self, token: str, *, ctx: Context | None = None) -> dict:
        """Return the ``/user/tokens/verify`` result (``status``, ``expires_on``...)."""
        data = self._request("GET", "/user/tokens/verify", token, ctx=ctx)
        return data.get("result") or {}

    # ------------------------------------------------------------------
    # Zones
    # ------------------------------------------------------------------

    def list_zones(
        self, token: str, name: str, *, account_id: str = "", ctx: Context | None = None,
    ) -> list[dict]:
        """Return zones named *name*, each with ``id``, ``name`` and ``status``."""
        params: dict[str, Any] = {"name": name}
        if account_id:
            params["account.id"] = account_id
        raw = self._paginate("/zones", token, ctx=ctx, params=params, per_page=50)
        return [{"id": z["id"], "name": z.get("name", name), "status": z.get("status", "")} for z in raw]

    # ------------------------------------------------------------------
    # DNS Records
    # ------------------------------------------------------------------

    def list_records(
        self, token: str, zone_id: str, name: str, record_type: str, *, ctx: Context | None = None,
    ) -> list[dict]:
        """Return records of *record_type* named exactly *name*, in provider order."""
        raw = self._paginate(
            f"/zones/{zone_id}/dns_records",
            token,
            ctx=ctx,
            params={"name": name, "type": record_type},
            per_page=100,
        )
        return [_normalize_record(r) for r in raw]

    def create_record(self, token: str, zone_id: str, record: dict, *, ctx: Context | None = None) -> dict:
        """Create a DNS record and return the normalized result."""
        data = self._request(
            "POST", f"/zones/{zone_id}/dns_records", token, ctx=ctx, json_body=_to_api_payload(record)
        )
        return _normalize_record(data["result"])

    def update_record_content(
        self, token: str, zone_id: str, record_id: str, content: str, *, ctx: Context | None = None,
    ) -> dict:
        """Change only the content of a record; TTL, proxying and comment stay as they are."""
        data = self._request(
            "PATCH",
            f"/zones/{zone_id}/dns_records/{record_id}",
            token,
            ctx=ctx,
            json_body={"content": content},
        )
        return _normalize_record(data["result"])

    def delete_record(self, token: str, zone_id: str, record_id: str, *, ctx: Context | None = None) -> None:
        """Delete a DNS record."""
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}", token, ctx=ctx)

    # ------------------------------------------------------------------
    # IP lists
    # ------------------------------------------------------------------

    def list_lists(self, token: str, account_id: str, *, ctx: Context | None = None) -> list[dict]:
        """Return every list of the account (all kinds)."""
        data = self._request("GET", f"/accounts/{account_id}/rules/lists", token, ctx=ctx)
        return [
            {
                "id": raw["id"],
                "name": raw.get("name", ""),
                "description": raw.get("description", "") or "",
                "kind": raw.get("kind", ""),
            }
            for raw in data.get("result") or []
        ]

    def create_list(
        self, token: str, account_id: str, name: str, description: str, *, ctx: Context | None = None,
    ) -> dict:
        """Create an empty IP list and return its metadata."""
        data = self._request(
            "POST",
            f"/accounts/{account_id}/rules/lists",
            token,
            ctx=ctx,
            json_body={"name": name, "description": description, "kind": "ip"},
        )
        return data["result"]

    def delete_list(self, token: str, account_id: str, list_id: str, *, ctx: Context | None = None) -> None:
        self._request("DELETE", f"/accounts/{account_id}/rules/lists/{list_id}", token, ctx=ctx)

    def list_list_items(
        self, token: str, account_id: str, list_id: str, *, ctx: Context | None = None,
    ) -> list[dict]:
        """Return every item of a list, following cursor pagination."""
        items: list[dict] = []
        params: dict[str, Any] = {"per_page": 500}
        while True:
            data = self._request(
                "GET", f"/accounts/{account_id}/rules/lists/{list_id}/items", token, ctx=ctx, params=params
            )
            items.extend(data.get("result") or [])
            cursor = ((data.get("result_info") or {}).get("cursors") or {}).get("after")
            if not cursor:
                break
            params = {"per_page": 500, "cursor": cursor}
        return items

    def create_list_items(
        self,
        token: str,
        account_id: str,
        list_id: str,
        items: list[str],
        comment: str,
        *,
        ctx: Context | None = None,
    ) -> list[dict]:
        """Append IP ranges, wait for the bulk operation, and return the resulting items."""
        body = [{"ip": ip, "comment": comment} if comment else {"ip": ip} for ip in items]
        data = self._request(
            "POST", f"/accounts/{account_id}/rules/lists/{list_id}/items", token, ctx=ctx, json_body=body
        )
        self.wait_for_bulk_operation(token, account_id, _operation_id(data), ctx=ctx)
        return self.list_list_items(token, account_id, list_id, ctx=ctx)

    def delete_list_items(
        self,
        token: str,
        account_id: str,
        list_id: str,
        item_ids: list[str],
        *,
        ctx: Context | None = None,
    ) -> list[dict]:
        """Remove items, wait for the bulk operation, and return the remaining items."""
        data = self._request(
            "DELETE",
            f"/accounts/{account_id}/rules/lists/{list_id}/items",
            token,
            ctx=ctx,
            json_body={"items": [{"id": item_id} for item_id in item_ids]},
        )
        self.wait_for_bulk_operation(token, account_id, _operation_id(data), ctx=ctx)
        return self.list_list_items(token, account_id, list_id, ctx=ctx)

    def replace_list_items_async(
        self, token: str, account_id: str, list_id: str, items: list[str], *, ctx: Context | None = None,
    ) -> str:
        """Start replacing the list content; returns the operation ID without waiting."""
        data = self._request(
            "PUT",
            f"/accounts/{account_id}/rules/lists/{list_id}/items",
            token,
            ctx=ctx,
            json_body=[{"ip": ip} for ip in items],
        )
        return _operation_id(data)

    def wait_for_bulk_operation(
        self, token: str, account_id: str, operation_id: str, *, ctx: Context | None = None,
    ) -> None:
        """Poll a bulk list operation until it completes.

        Raises ``CloudflareAPIError`` if it fails or the context runs out.
        """
        ctx = ctx or Context.background()
        while True:
            data = self._request(
                "GET", f"/accounts/{account_id}/rules/lists/bulk_operations/{operation_id}", token, ctx=ctx
            )
            result = data.get("result") or {}
            status = result.get("status", "")
            if status == "completed":
                return
            if status == "failed":
                raise CloudflareAPIError(
                    200, [{"message": result.get("error") or f"Bulk operation {operation_id} failed"}]
                )
            try:
                ctx.sleep(BULK_OPERATION_POLL_SECONDS)
            except Cancelled as exc:
                raise CloudflareAPIError(
                    0, [{"message": f"Gave up waiting for bulk operation {operation_id}"}]
                ) from exc


# ------------------------------------------------------------------
# Normalisation helpers
# ------------------------------------------------------------------

def _operation_id(data: dict) -> str:
    return (data.get("result") or {}).get("operation_id", "")


def _normalize_record(raw: dict) -> dict:
    """Transform a Cloudflare API record into a consistent internal format."""
    return {
        "id": raw["id"],
        "type": raw.get("type", ""),
        "name": raw.get("name", ""),
        "content": raw.get("content", ""),
        "ttl": raw.get("ttl", 1),
        "proxied": raw.get("proxied", False),
        "comment": raw.get("comment") or "",
    }


def _to_api_payload(record: dict) -> dict:
    """Convert an internal record dict to a Cloudflare API write payload."""
    payload: dict[str, Any] = {
        "type": record["type"],
        "name": record["name"],
        "content": record["content"],
        "ttl": record.get("ttl", 1),
        "proxied": record.get("proxied", False),
    }
    if record.get("comment"):
        payload["comment"] = record["comment"]
    return payload
