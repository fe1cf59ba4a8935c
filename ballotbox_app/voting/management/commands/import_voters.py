from __future__ import annotations

from pathlib import Path
from typing import override

from django.core.management.base import BaseCommand, CommandError

from voting.models import Election
from voting.voter_import import dataset_from_csv, export_issued_tokens, import_voters, rows_from_dataset


class Command(BaseCommand):
    help = "Issue voter tokens for every email in a CSV file and print the plaintext tokens once."

    def add_arguments(self, parser) -> None:
        parser.add_argument("election", help="Slug of the election to issue tokens for.")
        parser.add_argument("csv_path", help="CSV file with an 'email' column.")
        parser.add_argument(
            "--expiry-hours",
            type=int,
            default=None,
            help="Tokens expire this many hours after issuance.",
        )
        parser.add_argument(
            "--output",
            default="",
            help="Write the email,token CSV here instead of stdout.",
        )

    @override
    def handle(self, *args, **options) -> None:
        slug = str(options["election"]).strip()
        election = Election.objects.filter(slug=slug).first()
        if election is None:
            raise CommandError(f"Election {slug!r} does not exist.")

        expiry_hours: int | None = options.get("expiry_hours")
        if expiry_hours is not None and expiry_hours <= 0:
            raise CommandError("--expiry-hours must be positive.")

        path = Path(options["csv_path"])
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise CommandError(f"Cannot read {path}: {exc}") from exc

        try:
            rows = rows_from_dataset(dataset_from_csv(content))
        except ValueError as exc:
            raise CommandError(str(exc)) from exc

        result = import_voters(election=election, rows=rows, expiry_hours=expiry_hours)

        tokens_csv = export_issued_tokens(result.issued)
        output: str = str(options.get("output") or "").strip()
        if output:
            Path(output).write_text(tokens_csv, encoding="utf-8")
        else:
            self.stdout.write(tokens_csv, ending="")

        for error in result.errors:
            self.stderr.write(error)

        summary = f"Issued {result.success_count} voter token(s); failed {len(result.errors)}."
        if output:
            self.stdout.write(summary)
        else:
            self.stderr.write(summary)
