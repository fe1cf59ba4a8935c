from __future__ import annotations

import datetime
import uuid
from typing import override

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from voting.errors import VoteImmutableError, VoterTokenRedeemedError
from voting.rules import MULTIPLE, SINGLE, BallotDefinition


class Election(models.Model):
    name = models.CharField(max_length=255)
    slug = models.SlugField(max_length=100, unique=True)
    description = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")

    def __str__(self) -> str:
        return self.name


class Ballot(models.Model):
    class Type(models.TextChoices):
        single = SINGLE, "Single choice"
        multiple = MULTIPLE, "Multiple choice"

    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="ballots")
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    type = models.CharField(max_length=16, choices=Type.choices, default=Type.single)
    # Only meaningful for multiple-choice ballots.
    max_selections = models.PositiveSmallIntegerField(default=1)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(max_selections__gte=1),
                name="chk_ballot_max_selections_positive",
            ),
        ]
        ordering = ("election_id", "id")

    def __str__(self) -> str:
        return f"{self.title} ({self.get_type_display()})"

    @override
    def clean(self) -> None:
        super().clean()
        if self.type == self.Type.single and self.max_selections != 1:
            raise ValidationError({"max_selections": "Single-choice ballots allow exactly one selection."})

    def definition(self) -> BallotDefinition:
        return BallotDefinition(
            ballot_id=int(self.pk),
            type=str(self.type),
            max_selections=int(self.max_selections),
            option_ids=tuple(int(option.pk) for option in self.options.all()),
        )


class BallotOption(models.Model):
    ballot = models.ForeignKey(Ballot, on_delete=models.CASCADE, related_name="options")
    text = models.CharField(max_length=255)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ("order", "id")

    def __str__(self) -> str:
        return self.text


class VoterToken(models.Model):
    """A single-use credential issued to one voter identity.

    Only the digest of the plaintext token is stored. ``redeemed`` moves from
    False to True exactly once, through a conditional UPDATE in
    ``voting.services``; nothing moves it back.
    """

    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="voter_tokens")
    identity = models.CharField(max_length=254)
    token_digest = models.CharField(max_length=64, editable=False)
    redeemed = models.BooleanField(default=False)
    redeemed_at = models.DateTimeField(blank=True, null=True)
    expires_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["election", "identity"],
                name="uniq_votertoken_election_identity",
            ),
            models.UniqueConstraint(
                fields=["election", "token_digest"],
                name="uniq_votertoken_election_digest",
            ),
            models.CheckConstraint(
                condition=Q(redeemed=False) | Q(redeemed_at__isnull=False),
                name="chk_votertoken_redeemed_at_set",
            ),
        ]
        indexes = [
            models.Index(fields=["election", "redeemed"], name="vt_election_redeemed"),
        ]
        ordering = ("-created_at", "-id")

    def __str__(self) -> str:
        return f"{self.identity} ({self.election_id})"

    def is_expired(self, *, now: datetime.datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or timezone.now())

    @override
    def save(self, *args, **kwargs) -> None:
        if not self._state.adding and not self.redeemed:
            if VoterToken.objects.filter(pk=self.pk, redeemed=True).exists():
                raise VoterTokenRedeemedError("a redeemed voter token cannot be made redeemable again")
        super().save(*args, **kwargs)


class VoteQuerySet(models.QuerySet):
    @override
    def update(self, **kwargs):
        raise VoteImmutableError("vote rows are append-only")

    @override
    def delete(self):
        raise VoteImmutableError("vote rows are append-only")


class Vote(models.Model):
    # No reference to the voter token, no timestamp and a random primary key:
    # neither columns nor row order lead back to the credential that cast it.
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    election = models.ForeignKey(Election, on_delete=models.PROTECT, related_name="votes")
    ballot = models.ForeignKey(Ballot, on_delete=models.PROTECT, related_name="votes")
    option_ids = models.JSONField(default=list)
    meta = models.JSONField(blank=True, default=dict)

    objects = VoteQuerySet.as_manager()

    class Meta:
        indexes = [
            models.Index(fields=["election", "ballot"], name="vote_election_ballot"),
        ]

    def __str__(self) -> str:
        return f"vote {self.pk} on ballot {self.ballot_id}"

    @override
    def save(self, *args, **kwargs) -> None:
        if not self._state.adding:
            raise VoteImmutableError("vote rows are append-only")
        super().save(*args, **kwargs)

    @override
    def delete(self, *args, **kwargs):
        raise VoteImmutableError("vote rows are append-only")
