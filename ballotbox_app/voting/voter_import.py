from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from tablib import Dataset

from voting.errors import IssuanceError
from voting.models import Election
from voting.services import IssuedVoterToken, issue_voter_token

logger = logging.getLogger(__name__)

COMMENT_PREFIX = "#"


@dataclass
class VoterImportResult:
    success_count: int = 0
    errors: list[str] = field(default_factory=list)
    issued: list[IssuedVoterToken] = field(default_factory=list)


def _norm_header(value: str) -> str:
    return "".join(ch for ch in value.strip().lower() if ch.isalnum())


def _normalize_str(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _row_identity(row: Mapping[str, object] | str) -> str:
    if isinstance(row, Mapping):
        for key, value in row.items():
            if _norm_header(str(key or "")) == "email":
                return _normalize_str(value)
        return ""
    return _normalize_str(row)


def import_voters(
    *,
    election: Election,
    rows: Iterable[Mapping[str, object] | str],
    expiry_hours: int | None = None,
) -> VoterImportResult:
    """Issue one voter token per row.

    Rows are either mappings with an ``email`` column (matched
    case-insensitively) or bare identity strings. Blank rows and rows starting
    with ``#`` are skipped without being reported. A failing row is recorded in
    ``errors`` and the batch carries on.
    """
    result = VoterImportResult()

    for row_number, row in enumerate(rows, start=1):
        identity = _row_identity(row)
        if not identity or identity.startswith(COMMENT_PREFIX):
            continue

        try:
            issued = issue_voter_token(election=election, identity=identity, expiry_hours=expiry_hours)
        except IssuanceError as exc:
            result.errors.append(f"Row {row_number}: {exc}")
            continue

        result.issued.append(issued)
        result.success_count += 1

    logger.info(
        "Voter import finished election=%s issued=%d errors=%d",
        election.pk,
        result.success_count,
        len(result.errors),
    )
    return result


def dataset_from_csv(content: bytes | str) -> Dataset:
    if isinstance(content, bytes):
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = content.decode("utf-8", errors="replace")
    else:
        text = content.lstrip("\ufeff")

    dataset = Dataset()
    if not text.strip():
        return dataset
    dataset.load(text, format="csv")
    return dataset


def rows_from_dataset(dataset: Dataset) -> list[dict[str, object]]:
    headers = [str(h or "") for h in (dataset.headers or [])]
    if not any(_norm_header(h) == "email" for h in headers):
        raise ValueError("CSV file has no email column")
    return [dict(row) for row in dataset.dict]


def export_issued_tokens(issued: Iterable[IssuedVoterToken]) -> str:
    out = Dataset()
    out.headers = ["email", "token"]
    for item in issued:
        out.append([item.identity, item.token])
    return out.export("csv")
