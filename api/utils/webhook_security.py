"""Inbound webhook checks: source IP allowlist and x-signature HMAC."""
from __future__ import annotations

import hashlib
import hmac
import ipaddress
from typing import Iterable, Optional


def ip_allowed(remote_ip: Optional[str], allowlist: Optional[Iterable[str]]) -> bool:
    """True when no allowlist is configured or ``remote_ip`` matches an IP/CIDR entry."""
    entries = [e.strip() for e in (allowlist or []) if e and e.strip()]
    if not entries:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in entries:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


def parse_signature_header(value: Optional[str]) -> dict[str, str]:
    """``"ts=1700000000,v1=abc..."`` → ``{"ts": ..., "v1": ...}``."""
    parts: dict[str, str] = {}
    for part in (value or "").split(","):
        if "=" in part:
            key, val = part.split("=", 1)
            parts[key.strip()] = val.strip()
    return parts


def signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def compute_signature(secret: str, data_id: str, request_id: str, ts: str) -> str:
    return hmac.new(
        secret.encode(),
        signature_manifest(data_id, request_id, ts).encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(
    secret: Optional[str],
    *,
    x_signature: Optional[str],
    x_request_id: Optional[str],
    data_id: Optional[str],
) -> bool:
    """Check the gateway's HMAC-SHA256 signature. Always passes without a secret."""
    if not secret:
        return True
    if not x_signature or not x_request_id or not data_id:
        return False
    parts = parse_signature_header(x_signature)
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        return False
    # The gateway signs the lowercased id for alphanumeric ids
    expected = compute_signature(secret, str(data_id).lower(), x_request_id, ts)
    return hmac.compare_digest(expected, v1)
