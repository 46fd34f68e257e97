"""Ed25519 signatures for manual approval records."""

from __future__ import annotations

import base64
import json
import os
import time
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

APPROVAL_SCHEMA_VERSION = "approval.v1"
APPROVAL_DECISIONS = ("approve", "reject")
KEYS_ENV_VAR = "ROLLOUTKEEPER_APPROVAL_KEYS_PATH"


def canonical_json_bytes(obj: dict) -> bytes:
    """Serialize object to deterministic UTF-8 JSON bytes."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def _normalize_keyring(payload: object) -> dict[str, str]:
    if not isinstance(payload, dict):
        return {}
    normalized: dict[str, str] = {}
    for kid, pubkey in payload.items():
        if not isinstance(kid, str) or not kid.strip():
            continue
        if not isinstance(pubkey, str) or not pubkey.strip():
            continue
        try:
            pub_raw = base64.b64decode(pubkey, validate=True)
        except ValueError:
            continue
        if len(pub_raw) != 32:
            continue
        normalized[kid] = pubkey
    return dict(sorted(normalized.items(), key=lambda item: item[0]))


def load_approval_keys(path: Path | None = None) -> dict[str, str]:
    """Load the approver allowlist, a JSON map {kid -> base64 raw 32-byte public key}."""
    if path is None:
        env_path = os.environ.get(KEYS_ENV_VAR)
        if not env_path:
            return {}
        path = Path(env_path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return _normalize_keyring(payload)


def public_key_b64(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw).decode("ascii")


def load_private_key(path: Path) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError(f"{path}: signing key must be an Ed25519 private key")
    return key


def build_approval(
    *,
    plan_id: str,
    gate: str,
    decision: str = "approve",
    approver: str | None = None,
    comment: str | None = None,
    issued_at: int | None = None,
) -> dict:
    if decision not in APPROVAL_DECISIONS:
        raise ValueError(f"decision must be one of: {', '.join(APPROVAL_DECISIONS)}")
    return {
        "schema_version": APPROVAL_SCHEMA_VERSION,
        "plan_id": plan_id,
        "gate": gate,
        "decision": decision,
        "approver": approver,
        "comment": comment,
        "issued_at": int(time.time()) if issued_at is None else int(issued_at),
    }


def sign_approval(record: dict, private_key: Ed25519PrivateKey, *, kid: str) -> dict:
    payload = {k: v for k, v in record.items() if k != "signature"}
    payload["kid"] = kid
    signature = private_key.sign(canonical_json_bytes(payload))
    return {**payload, "signature": base64.b64encode(signature).decode("ascii")}


def verify_approval(record: dict, keyring: dict[str, str]) -> tuple[bool, str]:
    """Check an approval's signature against the keyring; return (ok, reason_code)."""
    signature_b64 = record.get("signature")
    if not isinstance(signature_b64, str) or not signature_b64.strip():
        return False, "signature_missing"
    kid = record.get("kid")
    if not isinstance(kid, str) or kid not in keyring:
        return False, "unknown_kid"
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        pub_raw = base64.b64decode(keyring[kid], validate=True)
    except ValueError:
        return False, "signature_malformed"
    if len(signature) != 64:
        return False, "signature_malformed"
    payload = {k: v for k, v in record.items() if k != "signature"}
    try:
        Ed25519PublicKey.from_public_bytes(pub_raw).verify(signature, canonical_json_bytes(payload))
    except InvalidSignature:
        return False, "signature_invalid"
    return True, "ok"
