"""Detect SS58 account addresses in free text and link them to an explorer."""

from __future__ import annotations

import hashlib
import re

import base58

_CANDIDATE = re.compile(r"\b[1-9A-HJ-NP-Za-km-z]{47,48}\b")
_CHECKSUM_PREFIX = b"SS58PRE"
_CHECKSUM_LENGTH = 2
_ACCOUNT_LENGTH = 32


def is_valid_ss58(address: str) -> bool:
    """Return whether *address* decodes to a 32-byte account with a valid checksum.

    Network prefixes 0-63 take one byte, 64-16383 take two bytes whose
    first byte has bit 6 set.
    """
    try:
        data = base58.b58decode(address)
    except ValueError:
        return False

    if len(data) == 1 + _ACCOUNT_LENGTH + _CHECKSUM_LENGTH:
        if data[0] >= 64:
            return False
    elif len(data) == 2 + _ACCOUNT_LENGTH + _CHECKSUM_LENGTH:
        if not 64 <= data[0] < 128:
            return False
    else:
        return False

    body, checksum = data[:-_CHECKSUM_LENGTH], data[-_CHECKSUM_LENGTH:]
    digest = hashlib.blake2b(_CHECKSUM_PREFIX + body, digest_size=64).digest()
    return digest[:_CHECKSUM_LENGTH] == checksum


def linkify_addresses(text: str, explorer_url: str) -> str:
    """Replace valid addresses in *text* with markdown links to *explorer_url*.

    Tokens that merely look like addresses are left untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        token = match.group(0)
        if is_valid_ss58(token):
            return f"[{token}]({explorer_url}{token})"
        return token

    return _CANDIDATE.sub(_replace, text)
