import logging
import re

# Plaintext voter tokens are 48 hex characters; stored digests are 64.
_TOKEN_LIKE_RE = re.compile(r"\b(?:[0-9a-fA-F]{64}|[0-9a-fA-F]{48})\b")

REDACTED = "[redacted]"


class RedactVoterTokenFilter(logging.Filter):
    """Mask anything shaped like a voter token or token digest in log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _TOKEN_LIKE_RE.sub(REDACTED, message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True
