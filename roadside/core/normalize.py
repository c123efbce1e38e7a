# roadside/core/normalize.py
"""
Boundary normalization for loosely shaped inputs.

Intake forms, vendor pages and admin tools send addresses and coordinates in
several shapes (plain strings, ``{lat, lng}``, ``{latitude, longitude}``,
``{address, location: {...}}``). Everything is folded into ``Address`` and
``Coordinate`` here so the rest of the core only ever sees one shape.
"""
from __future__ import annotations

import math
import re
from typing import Any, Optional

from roadside.core.domain import Address, Coordinate

PHONE_MIN_LEN = 5
PHONE_MAX_LEN = 32

_NON_PHONE_CHARS = re.compile(r"[^\d+]")


def normalize_phone(raw: Any) -> str:
    """
    Keep digits and a single leading ``+``.

    >>> normalize_phone(" +1 (555) 010-2000 ")
    '+15550102000'
    """
    if raw is None:
        return ""
    value = _NON_PHONE_CHARS.sub("", str(raw).strip())
    if not value:
        return ""
    lead = "+" if value.startswith("+") else ""
    return lead + value.replace("+", "")


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_coordinate(raw: Any) -> Optional[Coordinate]:
    """
    Parse a coordinate from a dict, a GeoJSON point, a ``(lat, lng)`` pair or a
    ``"lat,lng"`` string. GeoJSON orders its pair ``[lng, lat]``.

    Returns None when the input is absent or out of range.
    """
    if raw is None or isinstance(raw, Coordinate):
        return raw

    lat = lng = None
    if isinstance(raw, dict):
        if isinstance(raw.get("location"), dict):
            return parse_coordinate(raw["location"])
        if raw.get("type") == "Point":
            pair = raw.get("coordinates")
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                return None
            lng, lat = _to_float(pair[0]), _to_float(pair[1])
            return _checked(lat, lng)
        lat = _to_float(raw.get("lat", raw.get("latitude")))
        lng = _to_float(raw.get("lng", raw.get("lon", raw.get("longitude"))))
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat, lng = _to_float(raw[0]), _to_float(raw[1])
    elif isinstance(raw, str) and "," in raw:
        first, _, second = raw.partition(",")
        lat, lng = _to_float(first.strip()), _to_float(second.strip())

    return _checked(lat, lng)


def _checked(lat: Optional[float], lng: Optional[float]) -> Optional[Coordinate]:
    if lat is None or lng is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return Coordinate(lat=lat, lng=lng)


def normalize_address(raw: Any, coordinate: Any = None) -> Optional[Address]:
    """
    Fold an address payload into an ``Address``.

    ``coordinate`` is used when the payload itself carries none.
    """
    if raw is None:
        return None
    if isinstance(raw, Address):
        return raw

    text = ""
    coord = None
    if isinstance(raw, str):
        text = raw
    elif isinstance(raw, dict):
        text = str(
            raw.get("text")
            or raw.get("address")
            or raw.get("formatted_address")
            or raw.get("formattedAddress")
            or ""
        )
        coord = parse_coordinate(raw)
    else:
        text = str(raw)

    text = " ".join(text.split())
    if coord is None:
        coord = parse_coordinate(coordinate)
    if not text and coord is None:
        return None
    return Address(text=text, coordinate=coord)
