"""
Rendering for the two frame screens.

Cards are produced as SVG documents; frames are HTML pages carrying the
``fc:frame`` vNext meta tags that point at those cards.
"""

from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import List, Optional

from aggregator import LeaderboardEntry, MARKER
from core import LeaderboardScreen, StatsScreen

CARD_WIDTH = 1200
CARD_HEIGHT = 630

BACKGROUND = "#5b3a1c"
ACCENT = "#f5c26b"
HIGHLIGHT = "rgba(255,215,0,0.2)"
ROW_FILL = "rgba(255,255,255,0.1)"


@dataclass
class FrameButton:
    """A frame button; ``action`` is 'post' or 'link'."""
    label: str
    action: str = "post"
    target: Optional[str] = None


def _svg(body: str) -> str:
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" '
        f'xmlns:xlink="http://www.w3.org/1999/xlink" '
        f'width="{CARD_WIDTH}" height="{CARD_HEIGHT}" viewBox="0 0 {CARD_WIDTH} {CARD_HEIGHT}">'
        f'<rect width="100%" height="100%" fill="{BACKGROUND}"/>'
        f'{body}</svg>'
    )


def _text(x: int, y: int, content: str, size: int = 27, weight: int = 400,
          fill: str = "#ffffff", anchor: str = "middle", opacity: float = 1.0) -> str:
    return (
        f'<text x="{x}" y="{y}" font-family="sans-serif" font-size="{size}" '
        f'font-weight="{weight}" fill="{fill}" text-anchor="{anchor}" '
        f'opacity="{opacity}">{escape(content)}</text>'
    )


def render_stats_card(screen: StatsScreen) -> str:
    """Stats card: FID, avatar, four tiles and the error line if any."""
    metrics = screen.metrics
    parts = [_text(40, 60, f"FID: {metrics.user_id}", size=30, weight=700, anchor="start")]

    if metrics.avatar_url:
        parts.append(
            f'<image href="{escape(metrics.avatar_url)}" x="1060" y="20" '
            f'width="110" height="110" preserveAspectRatio="xMidYMid slice"/>'
        )
    parts.append(_text(600, 110, metrics.display_name, size=36, weight=700, fill=ACCENT))

    tiles = [
        (MARKER, "Today Earning", screen.earnings),
        ("💰", "remaining Allowance", screen.allowance),
        ("🏅", "Rank", screen.rank),
        ("🌰", "all time earning", screen.all_time),
    ]
    tile_width = CARD_WIDTH // len(tiles)
    for index, (icon, label, value) in enumerate(tiles):
        cx = tile_width * index + tile_width // 2
        parts.append(
            f'<rect x="{cx - tile_width // 2 + 20}" y="180" width="{tile_width - 40}" '
            f'height="320" rx="24" fill="{ROW_FILL}"/>'
        )
        parts.append(_text(cx, 270, icon, size=60))
        parts.append(_text(cx, 360, label, size=27, opacity=0.8))
        parts.append(_text(cx, 440, value, size=40, weight=700))

    if metrics.error:
        parts.append(_text(600, 580, metrics.error, size=28, weight=600, fill="#ff8a80"))

    return _svg("".join(parts))


def leaderboard_label(entry: LeaderboardEntry) -> str:
    """Row label; falls back to the raw FID when no name was resolved."""
    return f"{entry.rank}. {entry.display_name or f'FID: {entry.user_id}'}"


def render_leaderboard_card(screen: LeaderboardScreen) -> str:
    """Leaderboard card: one row per entry, the requester's rows highlighted."""
    parts = [_text(600, 60, "Leaderboard 🏆", size=44, weight=700, fill=ACCENT)]

    row_height = min(52, (CARD_HEIGHT - 100) // max(1, len(screen.entries)))
    for index, entry in enumerate(screen.entries):
        y = 90 + index * row_height
        fill = HIGHLIGHT if entry.user_id == screen.user_id else ROW_FILL
        parts.append(
            f'<rect x="150" y="{y}" width="900" height="{row_height - 6}" rx="10" fill="{fill}"/>'
        )
        baseline = y + row_height // 2 + 6
        parts.append(_text(175, baseline, leaderboard_label(entry), size=24, anchor="start"))
        parts.append(_text(1025, baseline, f"{entry.score} {MARKER}", size=24, anchor="end"))

    return _svg("".join(parts))


def render_frame_html(
    title: str,
    image_url: str,
    post_url: str,
    buttons: List[FrameButton],
    input_placeholder: Optional[str] = None,
) -> str:
    """HTML page carrying the frame meta tags."""
    meta = [
        ("fc:frame", "vNext"),
        ("fc:frame:image", image_url),
        ("fc:frame:image:aspect_ratio", "1.91:1"),
        ("fc:frame:post_url", post_url),
        ("og:title", title),
        ("og:image", image_url),
    ]
    if input_placeholder:
        meta.append(("fc:frame:input:text", input_placeholder))

    for index, button in enumerate(buttons[:4], start=1):
        meta.append((f"fc:frame:button:{index}", button.label))
        meta.append((f"fc:frame:button:{index}:action", button.action))
        if button.target:
            meta.append((f"fc:frame:button:{index}:target", button.target))

    tags = "\n".join(
        f'    <meta property="{escape(name)}" content="{escape(content)}" />'
        for name, content in meta
    )
    return (
        "<!DOCTYPE html>\n<html>\n  <head>\n"
        f"    <title>{escape(title)}</title>\n{tags}\n"
        "  </head>\n"
        f'  <body><img src="{escape(image_url)}" alt="{escape(title)}" /></body>\n'
        "</html>\n"
    )


__all__ = [
    "CARD_WIDTH",
    "CARD_HEIGHT",
    "FrameButton",
    "render_stats_card",
    "render_leaderboard_card",
    "leaderboard_label",
    "render_frame_html",
]
