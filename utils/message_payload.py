"""
Typed message bodies encoded with a prefix convention.

Plain text is stored as-is; images, gifts and contact shares carry a prefix
so the transcript stays a single text column. Plain text that happens to
begin with a reserved prefix is stored behind TEXT_ESCAPE so it can never be
read back as a typed payload.
"""
from typing import Tuple

KIND_TEXT = "text"
KIND_IMAGE = "image"
KIND_GIFT = "gift"
KIND_CONTACT = "contact"

PREFIXES = {
    KIND_IMAGE: "IMG::",
    KIND_GIFT: "GIFT::",
    KIND_CONTACT: "CONTACT::",
}
TEXT_ESCAPE = "TXT::"


def _is_reserved(value: str) -> bool:
    return value.startswith(TEXT_ESCAPE) or any(value.startswith(p) for p in PREFIXES.values())


def encode_body(kind: str, value: str) -> str:
    if kind == KIND_TEXT:
        return f"{TEXT_ESCAPE}{value}" if _is_reserved(value) else value
    if kind not in PREFIXES:
        raise ValueError(f"Unknown message kind: {kind}")
    return f"{PREFIXES[kind]}{value}"


def decode_body(body: str) -> Tuple[str, str]:
    """Return (kind, value) for a stored body."""
    if body.startswith(TEXT_ESCAPE):
        return KIND_TEXT, body[len(TEXT_ESCAPE):]
    for kind, prefix in PREFIXES.items():
        if body.startswith(prefix):
            return kind, body[len(prefix):]
    return KIND_TEXT, body


def render_for_prompt(body: str) -> str:
    """Short readable stand-in for non-text payloads inside a completion prompt."""
    kind, value = decode_body(body)
    if kind == KIND_IMAGE:
        return "[Image shared]"
    if kind == KIND_GIFT:
        return f"[Gift sent: {value}]"
    if kind == KIND_CONTACT:
        return "[Contact details shared]"
    return value
