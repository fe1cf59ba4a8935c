from __future__ import annotations

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.test import TestCase
from django.utils import timezone

from voting.errors import VoteImmutableError, VoterTokenRedeemedError
from voting.models import Ballot, Vote, VoterToken
from voting.services import cast_vote, issue_voter_token
from voting.tests.factories import make_ballot, make_election


class VoteImmutabilityTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.election = make_election()
        self.ballot, self.options = make_ballot(election=self.election)
        issued = issue_voter_token(election=self.election, identity="alice@example.org")
        self.vote = cast_vote(
            election=self.election,
            token=issued.token,
            ballot_id=self.ballot.pk,
            option_ids=[self.options[0].pk],
        )

    def test_vote_rows_cannot_be_saved_again(self) -> None:
        vote = Vote.objects.get(pk=self.vote.pk)
        vote.option_ids = [self.options[1].pk]
        with self.assertRaises(VoteImmutableError):
            vote.save()

    def test_vote_rows_cannot_be_deleted(self) -> None:
        with self.assertRaises(VoteImmutableError):
            Vote.objects.get(pk=self.vote.pk).delete()
        with self.assertRaises(VoteImmutableError):
            Vote.objects.filter(pk=self.vote.pk).delete()

    def test_vote_rows_cannot_be_updated_in_bulk(self) -> None:
        with self.assertRaises(VoteImmutableError):
            Vote.objects.filter(pk=self.vote.pk).update(option_ids=[self.options[1].pk])
        self.assertEqual(Vote.objects.get(pk=self.vote.pk).option_ids, [self.options[0].pk])

    def test_vote_row_has_no_link_to_the_voter_token(self) -> None:
        field_names = {f.name for f in Vote._meta.get_fields()}
        self.assertEqual(field_names, {"id", "election", "ballot", "option_ids", "meta"})


class VoterTokenModelTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.election = make_election()

    def test_redeemed_token_cannot_be_flipped_back(self) -> None:
        issued = issue_voter_token(election=self.election, identity="alice@example.org")
        VoterToken.objects.filter(pk=issued.voter_token.pk).update(redeemed=True, redeemed_at=timezone.now())

        stale = issued.voter_token
        self.assertFalse(stale.redeemed)
        with self.assertRaises(VoterTokenRedeemedError):
            stale.save()
        self.assertTrue(VoterToken.objects.get(pk=stale.pk).redeemed)

    def test_redeemed_requires_redeemed_at(self) -> None:
        issued = issue_voter_token(election=self.election, identity="alice@example.org")
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                VoterToken.objects.filter(pk=issued.voter_token.pk).update(redeemed=True)


class BallotModelTests(TestCase):
    def test_single_choice_ballot_requires_max_selections_one(self) -> None:
        election = make_election()
        ballot = Ballot(election=election, title="Chair", type=Ballot.Type.single, max_selections=2)
        with self.assertRaises(ValidationError):
            ballot.full_clean()

    def test_definition_lists_options_in_ballot_order(self) -> None:
        election = make_election()
        ballot, options = make_ballot(election=election, options=("X", "Y"))
        options[0].order = 5
        options[0].save()

        definition = ballot.definition()
        self.assertEqual(definition.option_ids, (options[1].pk, options[0].pk))
        self.assertEqual(definition.type, "single")
