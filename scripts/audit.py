"""Audit trail for connector mutations (grants, revokes, account changes)."""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "snow-events.jsonl"

_SIGNING_KEY_FILES = [
    Path(".runtime/secrets/audit_log_signing_key"),
    Path("/run/secrets/audit_log_signing_key"),
]

EventType = Literal[
    "role_grant", "role_revoke",
    "group_member_add", "group_member_remove",
    "account_create", "account_enable", "account_disable",
]


def _get_signing_key() -> bytes:
    """Resolve the HMAC key: AUDIT_LOG_SIGNING_KEY_FILE, then the env var, then secret files."""
    key_file = os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE")
    if key_file and Path(key_file).is_file():
        try:
            return Path(key_file).read_text(encoding="utf-8").strip().encode("utf-8")
        except OSError:
            pass

    if "AUDIT_LOG_SIGNING_KEY" in os.environ:
        return os.environ["AUDIT_LOG_SIGNING_KEY"].strip().encode("utf-8")

    for path in _SIGNING_KEY_FILES:
        if path.is_file():
            try:
                return path.read_text(encoding="utf-8").strip().encode("utf-8")
            except OSError:
                continue
    return b""


def _ensure_audit_dir() -> None:
    """Create audit directory with restricted permissions."""
    AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    AUDIT_LOG_DIR.chmod(0o700)


def _sign_event(event: dict[str, Any]) -> str:
    """HMAC-SHA256 over the canonical JSON form of the event ("" when no key is set)."""
    signing_key = _get_signing_key()
    if not signing_key:
        return ""
    canonical = json.dumps(event, sort_keys=True, separators=(",", ":"))
    return hmac.new(signing_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def log_event(
    event_type: EventType,
    principal: str,
    *,
    target: str = "",
    operator: str = "system",
    instance: str = "",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """Append a signed mutation event to the audit trail.

    Args:
        event_type: Kind of mutation (role_grant, group_member_add, ...)
        principal: Principal affected (e.g. ``user:abc123``)
        target: Role or group the principal was granted or revoked
        operator: Who performed the operation
        instance: ServiceNow instance URL
        details: Additional context (result, error, ...)
        success: Whether the operation succeeded
    """
    _ensure_audit_dir()

    event = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "event_type": event_type,
        "instance": instance,
        "principal": principal,
        "target": target,
        "operator": operator,
        "success": success,
        "details": details or {},
    }

    signature = _sign_event(event)
    if signature:
        event["signature"] = signature

    with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False) + "\n")

    AUDIT_LOG_FILE.chmod(0o600)


def safe_log_event(
    event_type: EventType,
    principal: str,
    *,
    target: str = "",
    operator: str = "system",
    instance: str = "",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> bool:
    """Same as ``log_event`` but never raises.

    Returns:
        True if the event was written, False if writing failed (logged as a warning)
    """
    try:
        log_event(
            event_type,
            principal,
            target=target,
            operator=operator,
            instance=instance,
            details=details,
            success=success,
        )
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.warning("[audit] Failed to log %s event for %s: %s", event_type, principal, e)
        return False


def verify_audit_log() -> tuple[int, int]:
    """Verify all signatures in the audit log.

    Returns:
        Tuple of (total_events, valid_signatures)
    """
    if not AUDIT_LOG_FILE.exists():
        return 0, 0

    total = 0
    valid = 0

    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            total += 1
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            stored_sig = event.pop("signature", "")
            if stored_sig and hmac.compare_digest(stored_sig, _sign_event(event)):
                valid += 1

    return total, valid


if __name__ == "__main__":
    import sys
    total, valid = verify_audit_log()
    print(f"Audit log: {valid}/{total} events with valid signatures")
    sys.exit(0 if total == valid else 1)
