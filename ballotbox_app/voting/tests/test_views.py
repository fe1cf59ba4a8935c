from __future__ import annotations

import json
from unittest.mock import patch

from django.contrib.auth.models import Permission, User
from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.urls import reverse

from voting.models import Ballot, Vote, VoterToken
from voting.services import issue_voter_token
from voting.tests.factories import make_ballot, make_election


def _grant(user: User, *codenames: str) -> None:
    user.user_permissions.add(*Permission.objects.filter(content_type__app_label="voting", codename__in=codenames))


class VoterEndpointTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.election = make_election()
        self.ballot, self.options = make_ballot(election=self.election)
        self.multi, self.multi_options = make_ballot(
            election=self.election,
            title="Committee",
            type=Ballot.Type.multiple,
            max_selections=2,
            options=("P", "Q", "R"),
        )
        self.issued = issue_voter_token(election=self.election, identity="alice@example.org")

    def _post(self, name: str, payload: object, **kwargs):
        url = reverse(name, args=[self.election.pk])
        return self.client.post(url, data=json.dumps(payload), content_type="application/json", **kwargs)

    def test_validate_reports_usable_token(self) -> None:
        resp = self._post("voter-token-validate", {"token": self.issued.token})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": True})

    def test_validate_reports_reason(self) -> None:
        resp = self._post("voter-token-validate", {"token": "nope"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json(), {"ok": False, "reason": "invalid"})

    def test_validate_requires_post(self) -> None:
        resp = self.client.get(reverse("voter-token-validate", args=[self.election.pk]))
        self.assertEqual(resp.status_code, 405)

    def test_cast_then_replay(self) -> None:
        payload = {"token": self.issued.token, "ballot_id": self.ballot.pk, "option_ids": [self.options[0].pk]}

        resp = self._post("vote-cast", payload, REMOTE_ADDR="192.0.2.7", HTTP_USER_AGENT="pytest")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": True, "ballot_id": self.ballot.pk, "option_ids": [self.options[0].pk]})
        self.assertEqual(Vote.objects.get().meta, {"ip": "192.0.2.7", "user_agent": "pytest"})

        resp = self._post("vote-cast", payload)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "invalid_or_used_token")

        resp = self._post("voter-token-validate", {"token": self.issued.token})
        self.assertEqual(resp.json()["reason"], "used")

    def test_cast_is_csrf_exempt(self) -> None:
        self.client = self.client_class(enforce_csrf_checks=True)
        resp = self._post(
            "vote-cast",
            {"token": self.issued.token, "ballot_id": self.ballot.pk, "option_ids": [self.options[0].pk]},
        )
        self.assertEqual(resp.status_code, 200)

    def test_cast_invalid_selection_is_400(self) -> None:
        resp = self._post(
            "vote-cast",
            {"token": self.issued.token, "ballot_id": self.ballot.pk, "option_ids": [o.pk for o in self.options]},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "invalid_selection_count")
        self.assertFalse(VoterToken.objects.get(pk=self.issued.voter_token.pk).redeemed)

    def test_cast_unknown_ballot_is_404(self) -> None:
        resp = self._post("vote-cast", {"token": self.issued.token, "ballot_id": 999999, "option_ids": [1]})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["code"], "ballot_not_found")

    def test_cast_malformed_payloads_are_400(self) -> None:
        url = reverse("vote-cast", args=[self.election.pk])
        for body in ("not json", "[]", json.dumps({"ballot_id": self.ballot.pk, "option_ids": []})):
            with self.subTest(body=body):
                resp = self.client.post(url, data=body, content_type="application/json")
                self.assertEqual(resp.status_code, 400)

        resp = self._post("vote-cast", {"token": self.issued.token, "ballot_id": self.ballot.pk, "option_ids": "1"})
        self.assertEqual(resp.status_code, 400)

    def test_cast_unknown_election_is_404(self) -> None:
        resp = self.client.post(
            reverse("vote-cast", args=[999999]),
            data=json.dumps({"token": self.issued.token}),
            content_type="application/json",
        )
        self.assertEqual(resp.status_code, 404)

    def test_cast_all(self) -> None:
        resp = self._post(
            "vote-cast-all",
            {
                "token": self.issued.token,
                "ballots": [
                    {"ballot_id": self.ballot.pk, "option_ids": [self.options[1].pk]},
                    {"ballot_id": self.multi.pk, "option_ids": [self.multi_options[0].pk, self.multi_options[2].pk]},
                ],
            },
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["ballots"]), 2)
        self.assertEqual(Vote.objects.count(), 2)

    def test_cast_all_duplicate_ballot_is_400(self) -> None:
        resp = self._post(
            "vote-cast-all",
            {
                "token": self.issued.token,
                "ballots": [
                    {"ballot_id": self.ballot.pk, "option_ids": [self.options[1].pk]},
                    {"ballot_id": self.ballot.pk, "option_ids": [self.options[0].pk]},
                ],
            },
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "duplicate_ballot")

    def test_cast_all_empty_list_is_400(self) -> None:
        resp = self._post("vote-cast-all", {"token": self.issued.token, "ballots": []})
        self.assertEqual(resp.status_code, 400)

    @override_settings(VOTING_ATOMIC_VOTE_WRITES=False)
    def test_vote_recording_failure_is_500(self) -> None:
        with patch("voting.services.Vote.objects.bulk_create", side_effect=DatabaseError("boom")):
            with self.assertLogs("voting.services", level="ERROR"):
                resp = self._post(
                    "vote-cast",
                    {"token": self.issued.token, "ballot_id": self.ballot.pk, "option_ids": [self.options[0].pk]},
                )
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["code"], "vote_recording_failed")
        self.assertTrue(resp.json()["credential_consumed"])


class OrganizerEndpointTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.election = make_election()
        self.ballot, self.options = make_ballot(election=self.election)
        self.organizer = User.objects.create_user(username="organizer", password="pw")
        _grant(self.organizer, "view_vote", "view_votertoken", "add_votertoken", "delete_votertoken")
        self.nobody = User.objects.create_user(username="nobody", password="pw")

    def test_results_require_authentication_and_permission(self) -> None:
        url = reverse("election-results", args=[self.election.pk])

        self.assertEqual(self.client.get(url).status_code, 401)

        self.client.force_login(self.nobody)
        self.assertEqual(self.client.get(url).status_code, 403)

    def test_results(self) -> None:
        issued = issue_voter_token(election=self.election, identity="alice@example.org")
        self.client.post(
            reverse("vote-cast", args=[self.election.pk]),
            data=json.dumps({"token": issued.token, "ballot_id": self.ballot.pk, "option_ids": [self.options[2].pk]}),
            content_type="application/json",
        )
        self.client.force_login(self.organizer)

        resp = self.client.get(reverse("election-results", args=[self.election.pk]))
        self.assertEqual(resp.status_code, 200)
        (ballot,) = resp.json()["results"]
        self.assertEqual([o["votes"] for o in ballot["options"]], [0, 0, 1])

        resp = self.client.get(reverse("ballot-results", args=[self.election.pk, self.ballot.pk]))
        data = resp.json()
        self.assertEqual(data["ballot_id"], self.ballot.pk)
        self.assertEqual(data["total_votes"], 1)
        self.assertEqual(
            data["tallies"],
            {str(self.options[0].pk): 0, str(self.options[1].pk): 0, str(self.options[2].pk): 1},
        )
        self.assertEqual([o["votes"] for o in data["options"]], [0, 0, 1])

        resp = self.client.get(reverse("ballot-results", args=[self.election.pk, 999999]))
        self.assertEqual(resp.status_code, 404)

    def test_add_voter_returns_token_once_and_list_hides_digest(self) -> None:
        self.client.force_login(self.organizer)
        url = reverse("election-voters", args=[self.election.pk])

        resp = self.client.post(url, data=json.dumps({"email": "Bob@Example.org"}), content_type="application/json")
        self.assertEqual(resp.status_code, 201)
        token = resp.json()["token"]
        self.assertEqual(resp.json()["voter"]["email"], "bob@example.org")

        resp = self.client.post(url, data=json.dumps({"email": "bob@example.org"}), content_type="application/json")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "duplicate_identity")

        resp = self.client.post(url, data=json.dumps({"email": "nope"}), content_type="application/json")
        self.assertEqual(resp.status_code, 400)

        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        body = resp.content.decode()
        self.assertNotIn(token, body)
        self.assertNotIn(VoterToken.objects.get().token_digest, body)
        self.assertEqual(resp.json()["voters"][0]["email"], "bob@example.org")
        self.assertFalse(resp.json()["voters"][0]["redeemed"])

    def test_add_voter_requires_add_permission(self) -> None:
        viewer = User.objects.create_user(username="viewer", password="pw")
        _grant(viewer, "view_votertoken")
        self.client.force_login(viewer)
        url = reverse("election-voters", args=[self.election.pk])

        self.assertEqual(self.client.get(url).status_code, 200)
        resp = self.client.post(url, data=json.dumps({"email": "bob@example.org"}), content_type="application/json")
        self.assertEqual(resp.status_code, 403)
        self.assertFalse(VoterToken.objects.exists())

    def test_import_voters_upload(self) -> None:
        self.client.force_login(self.organizer)
        upload = SimpleUploadedFile("voters.csv", b"Email\na@x.io\nbad\nc@x.io\n", content_type="text/csv")

        resp = self.client.post(reverse("election-voters-import", args=[self.election.pk]), data={"file": upload})

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["success_count"], 2)
        self.assertEqual(len(data["errors"]), 1)
        self.assertEqual([v["email"] for v in data["voters"]], ["a@x.io", "c@x.io"])

    def test_import_voters_requires_file_and_email_column(self) -> None:
        self.client.force_login(self.organizer)
        url = reverse("election-voters-import", args=[self.election.pk])

        self.assertEqual(self.client.post(url).status_code, 400)
        upload = SimpleUploadedFile("voters.csv", b"name\nAlice\n", content_type="text/csv")
        self.assertEqual(self.client.post(url, data={"file": upload}).status_code, 400)

    @override_settings(VOTING_IMPORT_MAX_ROWS=1)
    def test_import_voters_row_limit(self) -> None:
        self.client.force_login(self.organizer)
        upload = SimpleUploadedFile("voters.csv", b"email\na@x.io\nb@x.io\n", content_type="text/csv")

        resp = self.client.post(reverse("election-voters-import", args=[self.election.pk]), data={"file": upload})

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(VoterToken.objects.exists())

    def test_delete_voter(self) -> None:
        self.client.force_login(self.organizer)
        unused = issue_voter_token(election=self.election, identity="a@x.io")
        used = issue_voter_token(election=self.election, identity="b@x.io")
        self.client.post(
            reverse("vote-cast", args=[self.election.pk]),
            data=json.dumps({"token": used.token, "ballot_id": self.ballot.pk, "option_ids": [self.options[0].pk]}),
            content_type="application/json",
        )

        resp = self.client.post(reverse("election-voter-delete", args=[self.election.pk, unused.voter_token.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(VoterToken.objects.filter(pk=unused.voter_token.pk).exists())

        resp = self.client.post(reverse("election-voter-delete", args=[self.election.pk, used.voter_token.pk]))
        self.assertEqual(resp.status_code, 409)
        self.assertTrue(VoterToken.objects.filter(pk=used.voter_token.pk).exists())
