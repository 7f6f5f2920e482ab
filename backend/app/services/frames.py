"""HTML cards for Farcaster frame interactions."""

from __future__ import annotations

from dataclasses import dataclass
from html import escape
from urllib.parse import urlencode

from app.schemas import MarketIndexEntry


@dataclass(slots=True, frozen=True)
class FrameButton:
    label: str
    action: str = "post"
    target: str | None = None


def render_frame(
    *,
    image_url: str,
    buttons: list[FrameButton],
    post_url: str | None = None,
    title: str = "Based or Erased",
) -> str:
    tags = [
        ("fc:frame", "vNext"),
        ("fc:frame:image", image_url),
        ("og:image", image_url),
    ]
    for index, button in enumerate(buttons[:4], start=1):
        tags.append((f"fc:frame:button:{index}", button.label))
        tags.append((f"fc:frame:button:{index}:action", button.action))
        if button.target:
            tags.append((f"fc:frame:button:{index}:target", button.target))
    if post_url:
        tags.append(("fc:frame:post_url", post_url))

    meta = "\n".join(
        f'    <meta property="{escape(name)}" content="{escape(value)}" />' for name, value in tags
    )
    return (
        "<!DOCTYPE html>\n<html>\n  <head>\n"
        f"    <title>{escape(title)}</title>\n{meta}\n"
        "  </head>\n</html>\n"
    )


def _url(app_url: str, path: str, **params: object) -> str:
    query = urlencode({key: value for key, value in params.items() if value is not None})
    return f"{app_url}{path}" + (f"?{query}" if query else "")


def market_frame(app_url: str, market_id: int, market: MarketIndexEntry | None) -> str:
    goal = f" ({market.threshold} likes)" if market else ""
    return render_frame(
        image_url=_url(app_url, "/api/og", step="market", marketId=market_id),
        buttons=[
            FrameButton(
                f"MOON{goal}",
                action="tx",
                target=_url(app_url, "/api/tx", marketId=market_id, action="bet", isMoon="true"),
            ),
            FrameButton(
                "DOOM",
                action="tx",
                target=_url(app_url, "/api/tx", marketId=market_id, action="bet", isMoon="false"),
            ),
            FrameButton(
                "Open app", action="link", target=_url(app_url, "/miniapp", marketId=market_id)
            ),
        ],
        post_url=_url(app_url, "/api/frame/bet", marketId=market_id),
    )


def bet_confirmation_frame(app_url: str, market_id: int | None, button_index: int | None) -> str:
    side = "MOON" if button_index == 1 else "DOOM"
    return render_frame(
        image_url=_url(app_url, "/api/og", step="confirm", bet=side, marketId=market_id),
        buttons=[
            FrameButton("Bet Placed!", action="post"),
            FrameButton("Share", action="link", target="https://warpcast.com"),
        ],
        post_url=_url(app_url, "/api/frame", marketId=market_id),
    )


def claim_frame(app_url: str, market_id: int) -> str:
    return render_frame(
        image_url=_url(app_url, "/api/og", step="claim", marketId=market_id),
        buttons=[
            FrameButton(
                "Claim winnings",
                action="tx",
                target=_url(app_url, "/api/tx", marketId=market_id, action="claim"),
            ),
        ],
        post_url=_url(app_url, "/api/frame", marketId=market_id),
    )


def create_frame(app_url: str) -> str:
    return render_frame(
        image_url=_url(app_url, "/api/og", step="create"),
        buttons=[
            FrameButton("Create a market", action="link", target=_url(app_url, "/miniapp/create")),
        ],
    )
