"""Thin async client for the music platform's Web API.

Only the handful of player endpoints the sync engine needs are wrapped here.
Every call takes the caller's own access token; the client itself holds no
credentials. Failures are normalized into two exception types so callers can
tell a retryable rate limit from everything else.
"""

from typing import List, Optional, Tuple
import logging
import re

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.spotify.com/v1"

_SHARE_LINK = re.compile(r"https?://open\.spotify\.com/(?:intl-[\w-]+/)?(track|playlist)/([^?/#\s]+)")
_URI = re.compile(r"spotify:(track|playlist):([^\s:]+)$")


class UpstreamError(Exception):
    """Base class for failures reported by (or while reaching) the platform."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimited(UpstreamError):
    """The platform answered 429. Retryable."""

    def __init__(self, message: str = "rate limited by platform", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class UpstreamRejected(UpstreamError):
    """Any non-retryable platform failure, including transport errors."""


def parse_link(link: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(kind, id)`` for a track or playlist uri or share link.

    ``kind`` is ``"track"`` or ``"playlist"``; anything else gives
    ``(None, None)``.
    """
    link = (link or "").strip()
    match = _URI.match(link) or _SHARE_LINK.match(link)
    if match is None:
        return None, None
    return match.group(1), match.group(2)


def normalize_uri(value: str) -> str:
    """Turn a share link into a ``spotify:<kind>:<id>`` uri.

    Values that are not recognized links pass through stripped but otherwise
    unchanged.
    """
    kind, ident = parse_link(value)
    if kind is None:
        return (value or "").strip()
    return f"spotify:{kind}:{ident}"


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class PlatformClient:
    """Wraps the player endpoints (queue, play, pause, next, currently-playing)."""

    def __init__(self, base_url: str = DEFAULT_API_URL, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        # tests inject an httpx.MockTransport here
        self._transport = transport

    async def _request(self, method: str, path: str, access_token: str, params: Optional[dict] = None, json: Optional[dict] = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"}
        params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, path, headers=headers, params=params, json=json)
        except httpx.HTTPError as e:
            raise UpstreamRejected(f"platform request failed: {e}") from e

        if resp.status_code == 429:
            retry_after = _retry_after(resp)
            logger.info("Platform rate limited %s %s (retry-after=%s)", method, path, retry_after)
            raise UpstreamRateLimited(retry_after=retry_after)
        if resp.status_code >= 400:
            raise UpstreamRejected(f"platform answered {resp.status_code} for {method} {path}", status_code=resp.status_code)
        return resp

    async def add_to_queue(self, uri: str, access_token: str, device_id: Optional[str] = None) -> None:
        await self._request("POST", "/me/player/queue", access_token, params={"uri": uri, "device_id": device_id})

    async def play(self, access_token: str, device_id: Optional[str] = None, uris: Optional[List[str]] = None, position_ms: Optional[int] = None) -> None:
        """Resume playback, or start `uris` at `position_ms` when given."""
        body = None
        if uris:
            body = {"uris": list(uris)}
            if position_ms is not None:
                body["position_ms"] = int(position_ms)
        await self._request("PUT", "/me/player/play", access_token, params={"device_id": device_id}, json=body)

    async def pause(self, access_token: str, device_id: Optional[str] = None) -> None:
        await self._request("PUT", "/me/player/pause", access_token, params={"device_id": device_id})

    async def next_track(self, access_token: str, device_id: Optional[str] = None) -> None:
        await self._request("POST", "/me/player/next", access_token, params={"device_id": device_id})

    async def currently_playing(self, access_token: str) -> Optional[str]:
        """Return the uri of the track playing for `access_token`, if any.

        The platform answers 204 with no body when nothing is playing.
        """
        resp = await self._request("GET", "/me/player/currently-playing", access_token)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            item = resp.json().get("item") or {}
        except ValueError:
            return None
        return item.get("uri")

    async def playlist_tracks(self, playlist_id: str, access_token: str, limit: int = 50) -> List[str]:
        """Return up to `limit` track uris of a playlist, in playlist order.

        Follows the platform's ``next`` links page by page. Items without a
        track (removed or unavailable tracks) are skipped.
        """
        uris: List[str] = []
        url: Optional[str] = f"/playlists/{playlist_id}/tracks"
        params: Optional[dict] = {"limit": min(50, limit), "fields": "items(track(uri)),next"}
        while url and len(uris) < limit:
            resp = await self._request("GET", url, access_token, params=params)
            try:
                page = resp.json()
            except ValueError as e:
                raise UpstreamRejected("platform sent an unreadable playlist page") from e
            for item in page.get("items") or []:
                uri = (item.get("track") or {}).get("uri")
                if uri:
                    uris.append(uri)
            # the next link already carries its own query string
            url, params = page.get("next"), None
        logger.info("Fetched %d track(s) from playlist %s", min(len(uris), limit), playlist_id)
        return uris[:limit]


__all__ = [
    "DEFAULT_API_URL",
    "parse_link",
    "normalize_uri",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamRejected",
    "PlatformClient",
]
