"""GitHub REST client for the authenticated user's stars."""

from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import parse_qs, urlparse

import requests

from .config import REQUEST_TIMEOUT, get_verify
from .errors import (
    ProviderAuthError,
    ProviderRateOrNetworkError,
    TransientItemError,
)
from .models import Item
from .providers import SourceProvider

logger = logging.getLogger(__name__)


def _last_page(response: requests.Response) -> int | None:
    last = response.links.get("last", {}).get("url")
    if not last:
        return None
    values = parse_qs(urlparse(last).query).get("page")
    if not values:
        return None
    try:
        return int(values[0])
    except ValueError:
        return None


def _item_from_payload(repo: dict[str, Any]) -> Item:
    return Item(
        id=int(repo["id"]),
        name=repo["full_name"],
        url=repo.get("html_url") or "",
        description=repo.get("description"),
        star_count=int(repo.get("stargazers_count") or 0),
        topics=tuple(repo.get("topics") or ()),
    )


class GitHubSource(SourceProvider):
    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        timeout: int = REQUEST_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )

    def _get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        passthrough: tuple[int, ...] = (),
    ) -> requests.Response:
        url = f"{self.api_url}{path}"
        logger.debug(f"GET {url} {params or ''}")
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout, verify=get_verify())
        except requests.exceptions.ConnectionError as exc:
            raise ProviderRateOrNetworkError("Cannot connect to GitHub API") from exc
        except requests.exceptions.RequestException as exc:
            raise ProviderRateOrNetworkError(f"GitHub request failed: {exc}") from exc

        if resp.status_code in passthrough:
            return resp
        if resp.status_code == 401:
            raise ProviderAuthError("GitHub rejected the token")
        if resp.status_code == 429 or (
            resp.status_code == 403 and resp.headers.get("X-RateLimit-Remaining") == "0"
        ):
            raise ProviderRateOrNetworkError("GitHub rate limit exceeded")
        if resp.status_code == 403:
            raise ProviderAuthError(f"GitHub denied access to {path}")
        return resp

    def _json(self, resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderRateOrNetworkError("GitHub returned a malformed response") from exc

    def list_starred(self, page: int, page_size: int) -> list[Item]:
        resp = self._get(
            "/user/starred",
            {"per_page": page_size, "page": page, "sort": "created", "direction": "asc"},
        )
        if resp.status_code != 200:
            raise ProviderRateOrNetworkError(
                f"Listing starred repositories failed ({resp.status_code}): {resp.text}"
            )
        payload = self._json(resp)
        if not isinstance(payload, list):
            raise ProviderRateOrNetworkError("GitHub starred listing is not a list")
        try:
            return [_item_from_payload(repo) for repo in payload]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderRateOrNetworkError(f"Unexpected starred repository payload: {exc}") from exc

    def get_content(self, item: Item) -> str | None:
        # A 403 here is scoped to one repository (e.g. an org with SSO enforcement)
        try:
            resp = self._get(f"/repos/{item.name}/readme", passthrough=(403, 451))
        except ProviderRateOrNetworkError as exc:
            raise TransientItemError(f"README fetch failed for {item.name}: {exc}") from exc

        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise TransientItemError(f"README fetch failed for {item.name} ({resp.status_code})")

        try:
            encoded = resp.json().get("content") or ""
            return base64.b64decode(encoded).decode("utf-8", errors="replace")
        except (ValueError, AttributeError) as exc:
            raise TransientItemError(f"README for {item.name} could not be decoded") from exc

    def total_starred_count(self) -> int:
        # With per_page=1 the last page number equals the number of stars
        resp = self._get("/user/starred", {"per_page": 1})
        if resp.status_code != 200:
            raise ProviderRateOrNetworkError(f"Counting starred repositories failed ({resp.status_code})")
        last = _last_page(resp)
        if last is not None:
            return last
        payload = self._json(resp)
        return len(payload) if isinstance(payload, list) else 0

    def validate_credential(self) -> bool:
        try:
            resp = self._get("/user")
        except ProviderAuthError:
            return False
        return resp.status_code == 200
