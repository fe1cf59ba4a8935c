from __future__ import annotations

import uuid

import django.db.models.deletion
from django.db import migrations, models
from django.db.models import Q


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Election",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("slug", models.SlugField(max_length=100, unique=True)),
                ("description", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ("-created_at", "-id"),
            },
        ),
        migrations.CreateModel(
            name="Ballot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "type",
                    models.CharField(
                        choices=[("single", "Single choice"), ("multiple", "Multiple choice")],
                        default="single",
                        max_length=16,
                    ),
                ),
                ("max_selections", models.PositiveSmallIntegerField(default=1)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="ballots",
                        to="voting.election",
                    ),
                ),
            ],
            options={
                "ordering": ("election_id", "id"),
                "constraints": [
                    models.CheckConstraint(
                        condition=Q(("max_selections__gte", 1)),
                        name="chk_ballot_max_selections_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="BallotOption",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("text", models.CharField(max_length=255)),
                ("order", models.PositiveIntegerField(default=0)),
                (
                    "ballot",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="options",
                        to="voting.ballot",
                    ),
                ),
            ],
            options={
                "ordering": ("order", "id"),
            },
        ),
        migrations.CreateModel(
            name="VoterToken",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("identity", models.CharField(max_length=254)),
                ("token_digest", models.CharField(editable=False, max_length=64)),
                ("redeemed", models.BooleanField(default=False)),
                ("redeemed_at", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="voter_tokens",
                        to="voting.election",
                    ),
                ),
            ],
            options={
                "ordering": ("-created_at", "-id"),
                "indexes": [
                    models.Index(fields=["election", "redeemed"], name="vt_election_redeemed"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("election", "identity"),
                        name="uniq_votertoken_election_identity",
                    ),
                    models.UniqueConstraint(
                        fields=("election", "token_digest"),
                        name="uniq_votertoken_election_digest",
                    ),
                    models.CheckConstraint(
                        condition=Q(("redeemed", False)) | Q(("redeemed_at__isnull", False)),
                        name="chk_votertoken_redeemed_at_set",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Vote",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("option_ids", models.JSONField(default=list)),
                ("meta", models.JSONField(blank=True, default=dict)),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="votes",
                        to="voting.election",
                    ),
                ),
                (
                    "ballot",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="votes",
                        to="voting.ballot",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["election", "ballot"], name="vote_election_ballot"),
                ],
            },
        ),
    ]
