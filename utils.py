import base64
import hashlib
import io
import json
import math
import time
from typing import Any, Optional, Tuple

import qrcode

EARTH_RADIUS_KM = 6371.0


def now_ts() -> int:
    return int(time.time())


def compute_hash(prev_hash: str, payload: dict, timestamp: Any) -> str:
    block = json.dumps({
        "prev_hash": prev_hash,
        "payload": payload,
        "timestamp": timestamp
    }, sort_keys=True)
    return hashlib.sha256(block.encode("utf-8")).hexdigest()


def fingerprint(doc: Any) -> str:
    """Stable SHA-256 of a JSON-able document."""
    raw = json.dumps(doc, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def parse_gps(value: Optional[str]) -> Optional[Tuple[float, float]]:
    """Parse a ``"lat|lng"`` string. ``"0|0"`` and malformed values are unknown."""
    if not value:
        return None
    parts = value.split("|")
    if len(parts) != 2:
        return None
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if math.isnan(lat) or math.isnan(lng):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    if lat == 0 and lng == 0:
        return None
    return lat, lng


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def gps_distance_km(gps1: Optional[str], gps2: Optional[str]) -> Optional[float]:
    a, b = parse_gps(gps1), parse_gps(gps2)
    if a is None or b is None:
        return None
    return haversine_km(a, b)


def qr_png(url: str) -> bytes:
    img = qrcode.make(url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_data_url(url: str) -> str:
    return "data:image/png;base64," + base64.b64encode(qr_png(url)).decode("utf-8")


def b64_json(doc: Any) -> str:
    return base64.b64encode(json.dumps(doc, separators=(",", ":")).encode("utf-8")).decode("ascii")


def decode_b64_json(value: str) -> Any:
    """Inverse of ``b64_json``. Raises ``ValueError`` on anything malformed."""
    try:
        raw = base64.b64decode(value.strip(), validate=True)
        return json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"not base64 JSON: {exc}") from exc
