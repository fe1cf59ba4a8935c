from __future__ import annotations

import datetime
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from voting.errors import (
    BallotNotFoundError,
    DuplicateBallotSelectionError,
    DuplicateIdentityError,
    InvalidIdentityError,
    InvalidOrUsedTokenError,
    IssuanceError,
    SelectionError,
    TokenExpiredError,
    VoteRecordingError,
    VoterTokenRedeemedError,
)
from voting.models import Ballot, Election, Vote, VoterToken
from voting.rules import validate_selection
from voting.tokens import generate_voter_token, voter_token_digest

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Keys a submission may attach to its vote rows. Anything else is dropped.
SUBMISSION_META_KEYS: tuple[str, ...] = ("ip", "user_agent")

_ISSUE_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedVoterToken:
    voter_token: VoterToken
    # Plaintext token. Returned once to the issuing caller and never stored.
    token: str

    @property
    def identity(self) -> str:
        return self.voter_token.identity


@dataclass(frozen=True)
class TokenCheck:
    ok: bool
    reason: str = ""


@dataclass(frozen=True)
class BallotSelection:
    ballot_id: int
    option_ids: Sequence[object]


def normalize_identity(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def issue_voter_token(
    *,
    election: Election,
    identity: str,
    expiry_hours: int | None = None,
) -> IssuedVoterToken:
    normalized = normalize_identity(identity)
    if not _EMAIL_RE.match(normalized):
        raise InvalidIdentityError(f"invalid email: {str(identity or '').strip()!r}")

    if expiry_hours is None:
        expiry_hours = settings.VOTING_DEFAULT_TOKEN_EXPIRY_HOURS
    if expiry_hours is not None and int(expiry_hours) <= 0:
        raise IssuanceError("expiry_hours must be positive")

    if VoterToken.objects.filter(election=election, identity=normalized).exists():
        raise DuplicateIdentityError(f"{normalized} already has a voter token for this election")

    expires_at = None
    if expiry_hours is not None:
        expires_at = timezone.now() + datetime.timedelta(hours=int(expiry_hours))

    for _attempt in range(_ISSUE_ATTEMPTS):
        token = generate_voter_token()
        try:
            with transaction.atomic():
                voter_token = VoterToken.objects.create(
                    election=election,
                    identity=normalized,
                    token_digest=voter_token_digest(token),
                    expires_at=expires_at,
                )
        except IntegrityError as exc:
            # Either a concurrent issuance for the same identity won, or (very
            # unlikely) the digest collided. Only the latter is worth a retry.
            if VoterToken.objects.filter(election=election, identity=normalized).exists():
                raise DuplicateIdentityError(f"{normalized} already has a voter token for this election") from exc
            continue

        logger.info("Issued voter token id=%s election=%s", voter_token.pk, election.pk)
        return IssuedVoterToken(voter_token=voter_token, token=token)

    raise IssuanceError("could not allocate a unique voter token")


def check_voter_token(*, election: Election, token: str) -> TokenCheck:
    """Report whether ``token`` could still be used to vote. Never redeems it."""
    voter_token = (
        VoterToken.objects.filter(election=election, token_digest=voter_token_digest(token))
        .only("redeemed", "expires_at")
        .first()
    )
    if voter_token is None:
        return TokenCheck(ok=False, reason="invalid")
    if voter_token.redeemed:
        return TokenCheck(ok=False, reason="used")
    if voter_token.is_expired():
        return TokenCheck(ok=False, reason="expired")
    return TokenCheck(ok=True)


def _raise_for_token_check(check: TokenCheck) -> None:
    if check.ok:
        return
    if check.reason == "expired":
        raise TokenExpiredError("voter token has expired")
    raise InvalidOrUsedTokenError("invalid or already used voter token")


def _resolve_ballot(*, election: Election, ballot_id: object) -> Ballot:
    try:
        pk = int(ballot_id)
    except (TypeError, ValueError) as exc:
        raise BallotNotFoundError(f"ballot {ballot_id!r} not found for this election") from exc

    ballot = (
        Ballot.objects.filter(election=election, pk=pk, is_active=True)
        .prefetch_related("options")
        .first()
    )
    if ballot is None:
        raise BallotNotFoundError(f"ballot {pk} not found for this election")
    return ballot


def _submission_meta(meta: Mapping[str, object] | None) -> dict[str, str]:
    if not meta or not settings.VOTING_RECORD_SUBMISSION_METADATA:
        return {}
    return {key: str(meta[key])[:512] for key in SUBMISSION_META_KEYS if meta.get(key)}


def _redeem_voter_token(*, election: Election, token_digest: str, now: datetime.datetime) -> bool:
    # The whole "has this voter already voted" decision is this one statement:
    # concurrent submissions with the same token race on it and exactly one
    # of them sees a row count of 1.
    updated = (
        VoterToken.objects.filter(election=election, token_digest=token_digest, redeemed=False)
        .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
        .update(redeemed=True, redeemed_at=now)
    )
    return updated == 1


def _rejected_redemption(*, election: Election, token_digest: str, now: datetime.datetime) -> Exception:
    # Diagnostics only; the decision was already made by the conditional update.
    voter_token = (
        VoterToken.objects.filter(election=election, token_digest=token_digest)
        .only("redeemed", "expires_at")
        .first()
    )
    if voter_token is not None and not voter_token.redeemed and voter_token.is_expired(now=now):
        return TokenExpiredError("voter token has expired")
    return InvalidOrUsedTokenError("invalid or already used voter token")


def _write_votes(
    *,
    election: Election,
    selections: Sequence[tuple[Ballot, list[int]]],
    meta: dict[str, str],
) -> list[Vote]:
    return Vote.objects.bulk_create(
        [Vote(election=election, ballot=ballot, option_ids=option_ids, meta=meta) for ballot, option_ids in selections]
    )


def _redeem_and_record(
    *,
    election: Election,
    token: str,
    selections: Sequence[tuple[Ballot, list[int]]],
    meta: Mapping[str, object] | None,
) -> list[Vote]:
    token_digest = voter_token_digest(token)
    vote_meta = _submission_meta(meta)
    now = timezone.now()

    if settings.VOTING_ATOMIC_VOTE_WRITES:
        try:
            with transaction.atomic():
                if not _redeem_voter_token(election=election, token_digest=token_digest, now=now):
                    raise _rejected_redemption(election=election, token_digest=token_digest, now=now)
                votes = _write_votes(election=election, selections=selections, meta=vote_meta)
        except DatabaseError as exc:
            logger.exception("Vote write failed; voter token left unredeemed election=%s", election.pk)
            raise VoteRecordingError("vote could not be recorded", credential_consumed=False) from exc
    else:
        if not _redeem_voter_token(election=election, token_digest=token_digest, now=now):
            raise _rejected_redemption(election=election, token_digest=token_digest, now=now)
        # Redemption is committed and authoritative from here on. A failed write
        # is reported, never retried: the rows may have landed anyway.
        try:
            with transaction.atomic():
                votes = _write_votes(election=election, selections=selections, meta=vote_meta)
        except DatabaseError as exc:
            logger.exception(
                "Voter token redeemed but vote write failed; manual reconciliation needed election=%s ballots=%s",
                election.pk,
                [ballot.pk for ballot, _option_ids in selections],
            )
            raise VoteRecordingError(
                "voter token was consumed but the vote could not be recorded",
                credential_consumed=True,
            ) from exc

    logger.info("Recorded %d vote(s) election=%s", len(votes), election.pk)
    return votes


def cast_vote(
    *,
    election: Election,
    token: str,
    ballot_id: object,
    option_ids: Sequence[object],
    meta: Mapping[str, object] | None = None,
) -> Vote:
    ballot = _resolve_ballot(election=election, ballot_id=ballot_id)
    normalized = validate_selection(ballot.definition(), option_ids)

    votes = _redeem_and_record(election=election, token=token, selections=[(ballot, normalized)], meta=meta)
    return votes[0]


def cast_votes(
    *,
    election: Election,
    token: str,
    selections: Sequence[BallotSelection],
    meta: Mapping[str, object] | None = None,
) -> list[Vote]:
    """Redeem ``token`` once for a selection on each of several ballots.

    Every selection is validated before the token is touched; a single invalid
    ballot rejects the whole submission.
    """
    _raise_for_token_check(check_voter_token(election=election, token=token))

    if not selections:
        raise SelectionError("at least one ballot selection is required")

    validated: list[tuple[Ballot, list[int]]] = []
    seen_ballot_ids: set[int] = set()
    for selection in selections:
        ballot = _resolve_ballot(election=election, ballot_id=selection.ballot_id)
        if ballot.pk in seen_ballot_ids:
            raise DuplicateBallotSelectionError(f"ballot {ballot.pk} was submitted more than once")
        seen_ballot_ids.add(ballot.pk)
        validated.append((ballot, validate_selection(ballot.definition(), selection.option_ids)))

    return _redeem_and_record(election=election, token=token, selections=validated, meta=meta)


def delete_voter_token(*, voter_token: VoterToken) -> None:
    deleted, _per_model = VoterToken.objects.filter(pk=voter_token.pk, redeemed=False).delete()
    if not deleted:
        if not VoterToken.objects.filter(pk=voter_token.pk).exists():
            return
        raise VoterTokenRedeemedError("redeemed voter tokens cannot be deleted")
    logger.info("Deleted unredeemed voter token id=%s election=%s", voter_token.pk, voter_token.election_id)
