from __future__ import annotations

import hashlib
import secrets

# 24 random bytes, rendered as 48 hex characters.
VOTER_TOKEN_BYTES: int = 24


def generate_voter_token() -> str:
    return secrets.token_hex(VOTER_TOKEN_BYTES)


def voter_token_digest(token: str) -> str:
    # Only this digest is persisted; the plaintext leaves the process exactly once.
    return hashlib.sha256(str(token).strip().encode()).hexdigest()
