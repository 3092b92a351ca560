"""
Feishu (Lark) Open API wrapper for the reminder.

Provides a clean interface to the parts of the API we use:
- Tenant access token exchange with expiry tracking
- Text messages to a user, chat or email
- Bitable record listing (cursor pagination) and batch creation
- Error handling
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx
from rich.console import Console

from .config import FEISHU_BASE_URL

console = Console()

TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal/"
SEND_MESSAGE_PATH = "/open-apis/message/v4/send"
RECORDS_PATH = "/open-apis/bitable/v1/apps/{app_token}/tables/{table_id}/records"

# Bitable limits
MAX_PAGE_SIZE = 500
MAX_BATCH_SIZE = 100

# Refresh this many seconds before the server-side expiry
TOKEN_REFRESH_MARGIN = 60


class TransportError(Exception):
    """An HTTP call to Feishu failed or returned a non-zero code."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


@dataclass
class BitableRecord:
    """Represents a Bitable record."""

    record_id: str
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api_response(cls, item: dict) -> "BitableRecord":
        """Create BitableRecord from API response."""
        return cls(
            record_id=item.get("record_id") or item.get("id") or "",
            fields=item.get("fields") or {},
        )


def _decode(response: httpx.Response, what: str) -> dict:
    """
    Decode a Feishu response body.

    Feishu reports logical failures as a non-zero `code`, sometimes
    with HTTP 200, so both the status and the code are checked.
    """
    try:
        data = response.json()
    except ValueError:
        data = None

    if not isinstance(data, dict):
        if response.is_error:
            raise TransportError(
                f"{what} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        raise TransportError(f"{what} returned a non-JSON body", status_code=response.status_code)

    code = data.get("code", 0)
    if response.is_error or code != 0:
        raise TransportError(
            f"{what} failed (HTTP {response.status_code}, code {code}): {data.get('msg', '')}",
            status_code=response.status_code,
            code=code,
        )

    return data


class TenantTokenProvider:
    """
    Owns the tenant access token lifecycle.

    Fetches lazily, remembers the server-declared expiry and
    refreshes once the token is about to lapse.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        client: httpx.AsyncClient,
        base_url: str = FEISHU_BASE_URL,
        refresh_margin: float = TOKEN_REFRESH_MARGIN,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.refresh_margin = refresh_margin
        self._token: Optional[str] = None
        self._expires_at = 0.0

    @property
    def is_valid(self) -> bool:
        return self._token is not None and time.monotonic() < self._expires_at

    def invalidate(self) -> None:
        """Forget the cached token."""
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        """
        Return a usable tenant access token.

        Raises:
            TransportError: If the credential exchange fails.
        """
        if self.is_valid:
            return self._token

        try:
            response = await self.client.post(
                self.base_url + TOKEN_PATH,
                json={"app_id": self.app_id, "app_secret": self.app_secret},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Token exchange failed: {e}") from e

        data = _decode(response, "Token exchange")

        token = data.get("tenant_access_token")
        if not token:
            raise TransportError("Token exchange returned no tenant_access_token")

        expire = float(data.get("expire") or 0)
        self._token = token
        self._expires_at = time.monotonic() + max(expire - self.refresh_margin, 0)
        return token


class FeishuAPI:
    """
    Async wrapper around the Feishu Open API.

    Handles:
    - Authentication through a TenantTokenProvider
    - Message delivery
    - Paginated record listing
    - Batch record creation
    - Error handling (no retries)
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str = FEISHU_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[TenantTokenProvider] = None,
        debug: bool = False,
    ):
        """
        Initialize the Feishu API client.

        Args:
            app_id: Feishu app id.
            app_secret: Feishu app secret.
            base_url: API host.
            client: Shared httpx client; one is created when omitted.
            token_provider: Token source; one is created when omitted.
            debug: Echo every request.
        """
        self.base_url = base_url.rstrip("/")
        self.debug = debug
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        self.tokens = token_provider or TenantTokenProvider(
            app_id, app_secret, self.client, self.base_url
        )
        self._request_count = 0

    async def aclose(self) -> None:
        """Close the underlying client if we created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        what: str,
        tenant_token: Optional[str] = None,
        **kwargs: Any,
    ) -> dict:
        """Execute an authenticated API call and return the decoded body."""
        token = tenant_token or await self.tokens.get_token()
        url = self.base_url + path

        if self.debug:
            console.print(f"[dim]{method} {url}[/dim]")

        self._request_count += 1
        try:
            response = await self.client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{what} failed: {e}") from e

        # Rejected provider token: next call fetches a fresh one
        if response.status_code == 401 and not tenant_token:
            self.tokens.invalidate()

        return _decode(response, what)

    async def send_message(
        self,
        content: str,
        user_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        open_id: Optional[str] = None,
        email: Optional[str] = None,
        msg_type: str = "text",
        tenant_token: Optional[str] = None,
    ) -> dict:
        """
        Send a message to one destination.

        Exactly which selector is honoured is decided by Feishu;
        unset selectors are left out of the payload.

        https://open.feishu.cn/document/ukTMukTMukTM/uUjNz4SN2MjL1YzM
        """
        selectors = {
            "chat_id": chat_id,
            "open_id": open_id,
            "user_id": user_id,
            "email": email,
        }
        payload: dict[str, Any] = {k: v for k, v in selectors.items() if v}
        if not payload:
            raise ValueError("send_message needs a destination")

        payload["msg_type"] = msg_type
        payload["content"] = {msg_type: content}

        return await self._request(
            "POST",
            SEND_MESSAGE_PATH,
            "Send message",
            tenant_token=tenant_token,
            json=payload,
        )

    async def iter_records(
        self,
        app_token: str,
        table_id: str,
        field_names: Optional[list[str]] = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> AsyncIterator[BitableRecord]:
        """
        Yield every record of a table, following page tokens.

        Args:
            app_token: Bitable app token.
            table_id: Table id.
            field_names: Only return these fields.
            page_size: Records per request.
        """
        path = RECORDS_PATH.format(app_token=app_token, table_id=table_id)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        has_more = True
        page_token = None

        while has_more:
            params: dict[str, Any] = {"page_size": page_size}
            if field_names is not None:
                params["field_names"] = json.dumps(field_names, ensure_ascii=False)
            if page_token:
                params["page_token"] = page_token

            response = await self._request("GET", path, "List records", params=params)
            data = response.get("data") or {}

            for item in data.get("items") or []:
                yield BitableRecord.from_api_response(item)

            has_more = bool(data.get("has_more"))
            page_token = data.get("page_token")

            if has_more and not page_token:
                raise TransportError("List records reported more pages without a page_token")

    async def batch_create_records(
        self,
        app_token: str,
        table_id: str,
        records: list[dict[str, Any]],
    ) -> dict:
        """
        Create up to MAX_BATCH_SIZE records in one request.

        Args:
            records: Field maps, one per record.

        Returns:
            The `data` section of the response.
        """
        if len(records) > MAX_BATCH_SIZE:
            raise ValueError(f"At most {MAX_BATCH_SIZE} records per batch, got {len(records)}")

        path = RECORDS_PATH.format(app_token=app_token, table_id=table_id) + "/batch_create"
        response = await self._request(
            "POST",
            path,
            "Create records",
            json={"records": [{"fields": fields} for fields in records]},
        )
        return response.get("data") or {}

    @property
    def request_count(self) -> int:
        """Number of API requests made (token exchanges excluded)."""
        return self._request_count
