from __future__ import annotations

import json

from django.conf import settings
from django.http import Http404, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from voting.errors import (
    BallotConfigurationError,
    BallotNotFoundError,
    DuplicateIdentityError,
    InvalidIdentityError,
    InvalidOrUsedTokenError,
    IssuanceError,
    SelectionError,
    TokenExpiredError,
    VoteRecordingError,
    VoterTokenRedeemedError,
    VotingError,
)
from voting.models import Election, VoterToken
from voting.permissions import (
    VOTING_ADD_VOTER_TOKEN,
    VOTING_DELETE_VOTER_TOKEN,
    VOTING_VIEW_RESULTS,
    VOTING_VIEW_VOTER_TOKEN,
    json_permission_required,
)
from voting.services import (
    BallotSelection,
    cast_vote,
    cast_votes,
    check_voter_token,
    delete_voter_token,
    issue_voter_token,
)
from voting.tally import ballot_results, election_results
from voting.voter_import import dataset_from_csv, import_voters, rows_from_dataset

# Most specific classes first.
_ERROR_STATUS: tuple[tuple[type[VotingError], int], ...] = (
    (SelectionError, 400),
    (InvalidOrUsedTokenError, 403),
    (TokenExpiredError, 403),
    (BallotNotFoundError, 404),
    (BallotConfigurationError, 409),
    (InvalidIdentityError, 400),
    (DuplicateIdentityError, 409),
    (IssuanceError, 400),
    (VoterTokenRedeemedError, 409),
    (VoteRecordingError, 500),
)


def _error_response(exc: VotingError) -> JsonResponse:
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 400)
    payload: dict[str, object] = {"ok": False, "error": str(exc), "code": exc.code}
    if isinstance(exc, VoteRecordingError):
        payload["credential_consumed"] = exc.credential_consumed
    return JsonResponse(payload, status=status)


def _bad_request(message: str) -> JsonResponse:
    return JsonResponse({"ok": False, "error": message}, status=400)


def _get_election(election_id: int) -> Election:
    election = Election.objects.filter(pk=election_id).first()
    if election is None:
        raise Http404
    return election


def _json_body(request) -> dict[str, object]:
    raw = request.body.decode("utf-8") if request.body else "{}"
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


def _required_token(data: dict[str, object]) -> str:
    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("token is required")
    return token


def _option_ids(value: object, *, field: str = "option_ids") -> list[object]:
    if not isinstance(value, list):
        raise ValueError(f"{field} must be a list")
    return value


def _expiry_hours(value: object) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        hours = int(str(value).strip())
    except ValueError as exc:
        raise ValueError("expiry_hours must be an integer") from exc
    if hours <= 0:
        raise ValueError("expiry_hours must be positive")
    return hours


def _request_meta(request) -> dict[str, object]:
    return {
        "ip": request.META.get("REMOTE_ADDR") or "",
        "user_agent": request.META.get("HTTP_USER_AGENT") or "",
    }


@csrf_exempt
@require_POST
def voter_token_validate(request, election_id: int) -> JsonResponse:
    election = _get_election(election_id)
    try:
        token = _required_token(_json_body(request))
    except (ValueError, json.JSONDecodeError) as exc:
        return _bad_request(str(exc))

    check = check_voter_token(election=election, token=token)
    if not check.ok:
        return JsonResponse({"ok": False, "reason": check.reason}, status=401)
    return JsonResponse({"ok": True})


@csrf_exempt
@require_POST
def vote_cast(request, election_id: int) -> JsonResponse:
    election = _get_election(election_id)
    try:
        data = _json_body(request)
        token = _required_token(data)
        ballot_id = data.get("ballot_id")
        if ballot_id in (None, ""):
            raise ValueError("ballot_id is required")
        option_ids = _option_ids(data.get("option_ids"))
    except (ValueError, json.JSONDecodeError) as exc:
        return _bad_request(str(exc))

    try:
        vote = cast_vote(
            election=election,
            token=token,
            ballot_id=ballot_id,
            option_ids=option_ids,
            meta=_request_meta(request),
        )
    except VotingError as exc:
        return _error_response(exc)

    return JsonResponse({"ok": True, "ballot_id": vote.ballot_id, "option_ids": vote.option_ids})


@csrf_exempt
@require_POST
def vote_cast_all(request, election_id: int) -> JsonResponse:
    election = _get_election(election_id)
    try:
        data = _json_body(request)
        token = _required_token(data)
        raw_ballots = data.get("ballots")
        if not isinstance(raw_ballots, list) or not raw_ballots:
            raise ValueError("ballots must be a non-empty list")
        selections: list[BallotSelection] = []
        for item in raw_ballots:
            if not isinstance(item, dict):
                raise ValueError("each ballot entry must be an object")
            selections.append(
                BallotSelection(
                    ballot_id=item.get("ballot_id"),
                    option_ids=_option_ids(item.get("option_ids")),
                )
            )
    except (ValueError, json.JSONDecodeError) as exc:
        return _bad_request(str(exc))

    try:
        votes = cast_votes(election=election, token=token, selections=selections, meta=_request_meta(request))
    except VotingError as exc:
        return _error_response(exc)

    return JsonResponse(
        {
            "ok": True,
            "ballots": [{"ballot_id": vote.ballot_id, "option_ids": vote.option_ids} for vote in votes],
        }
    )


@require_GET
@json_permission_required(VOTING_VIEW_RESULTS)
def election_results_view(request, election_id: int) -> JsonResponse:
    election = _get_election(election_id)
    results = election_results(election=election)
    return JsonResponse({"ok": True, "election_id": election.pk, "results": [r.as_dict() for r in results]})


@require_GET
@json_permission_required(VOTING_VIEW_RESULTS)
def ballot_results_view(request, election_id: int, ballot_id: int) -> JsonResponse:
    election = _get_election(election_id)
    try:
        result = ballot_results(election=election, ballot_id=ballot_id)
    except VotingError as exc:
        return _error_response(exc)

    # Every option of the ballot is listed, including those without votes.
    tallies = {str(option.option_id): option.votes for option in result.options}
    return JsonResponse({"ok": True, **result.as_dict(), "tallies": tallies})


@json_permission_required(VOTING_VIEW_VOTER_TOKEN)
def _election_voters_list(request, election: Election) -> JsonResponse:
    voters = [
        {
            "id": row["id"],
            "email": row["identity"],
            "redeemed": row["redeemed"],
            "redeemed_at": row["redeemed_at"],
            "expires_at": row["expires_at"],
            "created_at": row["created_at"],
        }
        for row in VoterToken.objects.filter(election=election).values(
            "id", "identity", "redeemed", "redeemed_at", "expires_at", "created_at"
        )
    ]
    return JsonResponse({"ok": True, "results": len(voters), "voters": voters})


@json_permission_required(VOTING_ADD_VOTER_TOKEN)
def _election_voter_add(request, election: Election) -> JsonResponse:
    try:
        data = _json_body(request)
        expiry_hours = _expiry_hours(data.get("expiry_hours"))
    except (ValueError, json.JSONDecodeError) as exc:
        return _bad_request(str(exc))

    try:
        issued = issue_voter_token(election=election, identity=str(data.get("email") or ""), expiry_hours=expiry_hours)
    except VotingError as exc:
        return _error_response(exc)

    voter_token = issued.voter_token
    return JsonResponse(
        {
            "ok": True,
            "voter": {
                "id": voter_token.pk,
                "email": voter_token.identity,
                "expires_at": voter_token.expires_at,
            },
            "token": issued.token,
        },
        status=201,
    )


@require_http_methods(["GET", "POST"])
def election_voters(request, election_id: int) -> JsonResponse:
    election = _get_election(election_id)
    if request.method == "POST":
        return _election_voter_add(request, election)
    return _election_voters_list(request, election)


@require_POST
@json_permission_required(VOTING_ADD_VOTER_TOKEN)
def election_voters_import(request, election_id: int) -> JsonResponse:
    election = _get_election(election_id)
    uploaded = request.FILES.get("file")
    if uploaded is None:
        return _bad_request("No file uploaded.")

    try:
        expiry_hours = _expiry_hours(request.POST.get("expiry_hours"))
        dataset = dataset_from_csv(uploaded.read())
        if len(dataset) > settings.VOTING_IMPORT_MAX_ROWS:
            raise ValueError(f"CSV file has more than {settings.VOTING_IMPORT_MAX_ROWS} rows")
        rows = rows_from_dataset(dataset)
    except ValueError as exc:
        return _bad_request(str(exc))

    result = import_voters(election=election, rows=rows, expiry_hours=expiry_hours)
    return JsonResponse(
        {
            "ok": True,
            "success_count": result.success_count,
            "errors": result.errors,
            "voters": [{"email": item.identity, "token": item.token} for item in result.issued],
        }
    )


@require_POST
@json_permission_required(VOTING_DELETE_VOTER_TOKEN)
def election_voter_delete(request, election_id: int, voter_token_id: int) -> JsonResponse:
    election = _get_election(election_id)
    voter_token = VoterToken.objects.filter(election=election, pk=voter_token_id).first()
    if voter_token is None:
        raise Http404

    try:
        delete_voter_token(voter_token=voter_token)
    except VotingError as exc:
        return _error_response(exc)

    return JsonResponse({"ok": True})
