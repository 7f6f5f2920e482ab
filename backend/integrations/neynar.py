from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from app.core.config import Settings
from app.domain import CastMetadata

from .normalize import normalize_cast

CAST_PATH = "/v2/farcaster/cast"
CASTS_BULK_PATH = "/v2/farcaster/casts"
CAST_REACTIONS_PATH = "/v2/farcaster/reactions/cast"
USER_BULK_PATH = "/v2/farcaster/user/bulk"
USER_BULK_MAX_FIDS = 100


class NeynarError(RuntimeError):
    """Raised when Neynar cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CastNotFoundError(NeynarError):
    """Raised when Neynar reports the cast does not exist (deleted or never posted)."""


@dataclass(slots=True)
class LikeCollection:
    liker_fids: list[int] = field(default_factory=list)
    pages_read: int = 0
    truncated: bool = False

    @property
    def count(self) -> int:
        return len(self.liker_fids)


class NeynarClient:
    """Thin wrapper around the Neynar v2 Farcaster endpoints."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.neynar.com",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        headers = {"accept": "application/json"}
        if api_key:
            headers["api_key"] = api_key
        else:
            logger.warning("NEYNAR_API_KEY is not configured; Neynar requests will be rejected")
        self.client = httpx.Client(
            base_url=base_url, timeout=timeout, headers=headers, transport=transport
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "NeynarClient":
        return cls(
            api_key=settings.neynar_api_key,
            base_url=settings.neynar_api_root,
            timeout=settings.neynar_timeout_seconds,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        logger.debug("Neynar {} {} params={}", method, path, params)
        try:
            response = self.client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise NeynarError(f"Neynar {method} {path} failed: {exc}") from exc

        if response.status_code == 404:
            raise CastNotFoundError(f"Neynar {path} returned 404", status_code=404)
        if response.is_error:
            raise NeynarError(
                f"Neynar {method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise NeynarError(f"Neynar {path} returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}

    def fetch_cast(self, identifier: str, *, kind: str | None = None) -> CastMetadata:
        """Resolve a cast by hash or URL."""

        lookup_type = kind or ("url" if identifier.startswith("http") else "hash")
        payload = self._request(
            "GET", CAST_PATH, params={"identifier": identifier, "type": lookup_type}
        )
        cast = payload.get("cast")
        if not isinstance(cast, dict):
            # Only a real 404 means the cast is gone.
            raise NeynarError(f"Neynar response for {identifier} carried no cast object")
        return normalize_cast(cast)

    def fetch_casts(self, hashes: Sequence[str]) -> list[CastMetadata]:
        if not hashes:
            return []
        payload = self._request("GET", CASTS_BULK_PATH, params={"casts": ",".join(hashes)})
        result = payload.get("result")
        raw_casts = result.get("casts") if isinstance(result, dict) else payload.get("casts")
        return [normalize_cast(cast) for cast in raw_casts or [] if isinstance(cast, dict)]

    def collect_likes(
        self, cast_hash: str, *, page_limit: int, page_size: int = 100
    ) -> LikeCollection:
        """Walk the like reactions of a cast, stopping after ``page_limit`` pages."""

        collection = LikeCollection()
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"hash": cast_hash, "types": "likes", "limit": page_size}
            if cursor:
                params["cursor"] = cursor
            payload = self._request("GET", CAST_REACTIONS_PATH, params=params)
            collection.pages_read += 1
            for reaction in payload.get("reactions") or []:
                user = reaction.get("user") if isinstance(reaction, dict) else None
                fid = user.get("fid") if isinstance(user, dict) else None
                if fid is not None:
                    collection.liker_fids.append(int(fid))

            next_page = payload.get("next")
            cursor = next_page.get("cursor") if isinstance(next_page, dict) else None
            if not cursor:
                break
            if collection.pages_read >= page_limit:
                collection.truncated = True
                break
        return collection

    def fetch_user_scores(self, fids: Iterable[int]) -> dict[int, float]:
        unique = sorted(set(int(fid) for fid in fids))
        scores: dict[int, float] = {}
        for start in range(0, len(unique), USER_BULK_MAX_FIDS):
            chunk = unique[start : start + USER_BULK_MAX_FIDS]
            payload = self._request(
                "GET", USER_BULK_PATH, params={"fids": ",".join(str(fid) for fid in chunk)}
            )
            for user in payload.get("users") or []:
                if not isinstance(user, dict) or user.get("fid") is None:
                    continue
                experimental = user.get("experimental") or {}
                score = user.get("score") or experimental.get("neynar_user_score") or 0
                scores[int(user["fid"])] = float(score)
        return scores

    def publish_reply(self, *, signer_uuid: str, parent_hash: str, text: str) -> str | None:
        payload = self._request(
            "POST",
            CAST_PATH,
            json={"signer_uuid": signer_uuid, "text": text, "parent": parent_hash},
        )
        cast = payload.get("cast")
        return cast.get("hash") if isinstance(cast, dict) else None

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "NeynarClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
