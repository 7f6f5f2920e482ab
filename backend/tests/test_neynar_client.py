from __future__ import annotations

import json

import httpx
import pytest

from integrations.neynar import CastNotFoundError, NeynarClient, NeynarError

CAST_HASH = "0xa1b2c3d4e5f60718293a4b5c6d7e8f9012345678"


def _cast_payload(likes: int = 3) -> dict:
    return {
        "hash": CAST_HASH,
        "text": "gm @basedorerased",
        "author": {"fid": 42, "username": "alice", "pfp_url": "https://img.example/a.png"},
        "reactions": {"likes_count": likes},
    }


def _client(handler) -> NeynarClient:
    return NeynarClient(
        api_key="test-key",
        base_url="https://api.neynar.test",
        transport=httpx.MockTransport(handler),
    )


def test_fetch_cast_by_url_sends_key_and_type():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"cast": _cast_payload(likes=9)})

    with _client(handler) as client:
        cast = client.fetch_cast("https://warpcast.com/alice/0xa1b2c3d4")

    assert cast.hash == CAST_HASH
    assert cast.likes_count == 9
    request = seen[0]
    assert request.url.path == "/v2/farcaster/cast"
    assert request.url.params["type"] == "url"
    assert request.headers["api_key"] == "test-key"


def test_fetch_cast_404_raises_not_found():
    client = _client(lambda request: httpx.Response(404, json={"message": "Cast not found"}))

    with pytest.raises(CastNotFoundError) as excinfo:
        client.fetch_cast(CAST_HASH)
    assert excinfo.value.status_code == 404


def test_fetch_cast_without_cast_object_is_not_a_deletion():
    client = _client(lambda request: httpx.Response(200, json={"message": "ok"}))

    with pytest.raises(NeynarError) as excinfo:
        client.fetch_cast(CAST_HASH)
    assert not isinstance(excinfo.value, CastNotFoundError)


def test_server_errors_and_transport_failures_raise_neynar_error():
    client = _client(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(NeynarError) as excinfo:
        client.fetch_cast(CAST_HASH)
    assert not isinstance(excinfo.value, CastNotFoundError)
    assert excinfo.value.status_code == 503

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NeynarError):
        _client(broken).fetch_cast(CAST_HASH)


def test_fetch_casts_reads_bulk_result():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["casts"] == f"{CAST_HASH},0xdead"
        return httpx.Response(200, json={"result": {"casts": [_cast_payload(likes=4)]}})

    casts = _client(handler).fetch_casts([CAST_HASH, "0xdead"])

    assert [cast.likes_count for cast in casts] == [4]


def test_collect_likes_follows_cursor_until_page_limit():
    pages = {
        None: {"reactions": [{"user": {"fid": 1}}, {"user": {"fid": 2}}], "next": {"cursor": "p2"}},
        "p2": {"reactions": [{"user": {"fid": 3}}], "next": {"cursor": "p3"}},
        "p3": {"reactions": [{"user": {"fid": 4}}], "next": {"cursor": None}},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["types"] == "likes"
        return httpx.Response(200, json=pages[request.url.params.get("cursor")])

    capped = _client(handler).collect_likes(CAST_HASH, page_limit=2)
    assert capped.liker_fids == [1, 2, 3]
    assert capped.pages_read == 2
    assert capped.truncated is True

    complete = _client(handler).collect_likes(CAST_HASH, page_limit=5)
    assert complete.count == 4
    assert complete.truncated is False


def test_fetch_user_scores_chunks_requests():
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        fids = request.url.params["fids"]
        requested.append(fids)
        users = [
            {"fid": int(fid), "experimental": {"neynar_user_score": 0.9 if int(fid) % 2 else 0.1}}
            for fid in fids.split(",")
        ]
        return httpx.Response(200, json={"users": users})

    scores = _client(handler).fetch_user_scores(range(1, 151))

    assert len(requested) == 2
    assert scores[1] == 0.9
    assert scores[150] == 0.1


def test_publish_reply_posts_parent_and_signer():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "cast": {"hash": "0xreply"}})

    reply_hash = _client(handler).publish_reply(
        signer_uuid="signer", parent_hash=CAST_HASH, text="Market Created!"
    )

    assert reply_hash == "0xreply"
    assert bodies == [{"signer_uuid": "signer", "text": "Market Created!", "parent": CAST_HASH}]
