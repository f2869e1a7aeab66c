"""Heuristic User-Agent labels for analytics.

Nothing in the admission chain reads these labels; they are attached to the
request for logging and session bookkeeping only.
"""

from __future__ import annotations

from dataclasses import dataclass

_BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("CriOS", "Chrome"),
    ("Safari", "Safari"),
)

_SYSTEMS = (
    ("Windows", "Windows"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Android", "Android"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)


@dataclass(frozen=True)
class DeviceLabel:
    browser: str = "Unknown"
    os: str = "Unknown"
    device_class: str = "Desktop"


def _first_match(user_agent: str, table: tuple[tuple[str, str], ...]) -> str:
    for needle, label in table:
        if needle in user_agent:
            return label
    return "Unknown"


def describe_user_agent(user_agent: str) -> DeviceLabel:
    ua = user_agent or ""
    if "iPad" in ua or "Tablet" in ua:
        device_class = "Tablet"
    elif "Mobile" in ua or "iPhone" in ua:
        device_class = "Mobile"
    else:
        device_class = "Desktop"
    return DeviceLabel(browser=_first_match(ua, _BROWSERS), os=_first_match(ua, _SYSTEMS), device_class=device_class)


__all__ = ["DeviceLabel", "describe_user_agent"]
