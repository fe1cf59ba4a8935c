from __future__ import annotations


class VotingError(Exception):
    code = "voting_error"


class InvalidOrUsedTokenError(VotingError):
    code = "invalid_or_used_token"


class TokenExpiredError(VotingError):
    code = "token_expired"


class SelectionError(VotingError):
    code = "invalid_selection"


class InvalidSelectionCountError(SelectionError):
    code = "invalid_selection_count"


class UnknownOptionError(SelectionError):
    code = "unknown_option"


class DuplicateBallotSelectionError(SelectionError):
    code = "duplicate_ballot"


class BallotNotFoundError(VotingError):
    code = "ballot_not_found"


class BallotConfigurationError(VotingError):
    code = "ballot_misconfigured"


class IssuanceError(VotingError):
    code = "issuance_failed"


class InvalidIdentityError(IssuanceError):
    code = "invalid_identity"


class DuplicateIdentityError(IssuanceError):
    code = "duplicate_identity"


class VoterTokenRedeemedError(VotingError):
    code = "voter_token_redeemed"


class VoteImmutableError(VotingError):
    code = "vote_immutable"


class VoteRecordingError(VotingError):
    """The vote rows of a submission could not be written.

    ``credential_consumed`` tells the caller whether the voter token stayed
    redeemed anyway. When it did, the submission must be reconciled by hand:
    retrying could count the same ballot twice.
    """

    code = "vote_recording_failed"

    def __init__(self, message: str, *, credential_consumed: bool) -> None:
        super().__init__(message)
        self.credential_consumed = credential_consumed
