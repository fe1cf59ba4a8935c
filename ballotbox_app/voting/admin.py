from __future__ import annotations

from typing import override

from django.contrib import admin

from .models import Ballot, BallotOption, Election, Vote, VoterToken
from .rules import MIN_BALLOT_OPTIONS


class BallotInline(admin.TabularInline):
    model = Ballot
    extra = 0
    fields = ("title", "type", "max_selections", "is_active")
    show_change_link = True

    @override
    def has_delete_permission(self, request, obj=None):
        # Votes protect their ballot; obj is the parent election.
        if obj is not None and obj.votes.exists():
            return False
        return super().has_delete_permission(request, obj=obj)


class BallotOptionInline(admin.TabularInline):
    model = BallotOption
    extra = 0
    min_num = MIN_BALLOT_OPTIONS
    fields = ("text", "order")

    @staticmethod
    def _has_votes(ballot) -> bool:
        return ballot is not None and ballot.pk is not None and ballot.votes.exists()

    # Vote rows store option ids, so the option list of a voted ballot is frozen.
    @override
    def has_add_permission(self, request, obj=None):
        if self._has_votes(obj):
            return False
        return super().has_add_permission(request, obj)

    @override
    def has_change_permission(self, request, obj=None):
        if self._has_votes(obj):
            return False
        return super().has_change_permission(request, obj=obj)

    @override
    def has_delete_permission(self, request, obj=None):
        if self._has_votes(obj):
            return False
        return super().has_delete_permission(request, obj=obj)


@admin.register(Election)
class ElectionAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "created_at")
    search_fields = ("name", "slug")
    prepopulated_fields = {"slug": ("name",)}
    inlines = (BallotInline,)


@admin.register(Ballot)
class BallotAdmin(admin.ModelAdmin):
    list_display = ("title", "election", "type", "max_selections", "is_active")
    list_filter = ("type", "is_active", "election")
    search_fields = ("title",)
    inlines = (BallotOptionInline,)

    @override
    def get_readonly_fields(self, request, obj=None):
        readonly = list(super().get_readonly_fields(request, obj=obj))
        # Options and rules are frozen once the first vote lands.
        if obj is not None and obj.votes.exists():
            readonly.extend(f for f in ("election", "type", "max_selections") if f not in readonly)
        return tuple(readonly)


@admin.register(VoterToken)
class VoterTokenAdmin(admin.ModelAdmin):
    list_display = ("identity", "election", "redeemed", "redeemed_at", "expires_at", "created_at")
    list_filter = ("redeemed", "election")
    search_fields = ("identity",)
    # The digest is never shown; plaintext tokens only exist at issuance.
    fields = ("election", "identity", "redeemed", "redeemed_at", "expires_at", "created_at")
    readonly_fields = fields

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    @override
    def get_actions(self, request):
        # Bulk delete would bypass the unredeemed-only rule.
        actions = super().get_actions(request)
        actions.pop("delete_selected", None)
        return actions

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.redeemed:
            return False
        return super().has_delete_permission(request, obj=obj)


@admin.register(Vote)
class VoteAdmin(admin.ModelAdmin):
    list_display = ("id", "election", "ballot", "option_ids")
    list_filter = ("election",)
    fields = ("id", "election", "ballot", "option_ids", "meta")
    readonly_fields = fields

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @override
    def get_queryset(self, request):
        return super().get_queryset(request).select_related("election", "ballot")

