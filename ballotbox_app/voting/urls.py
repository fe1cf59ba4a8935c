from django.urls import path

from voting import views

urlpatterns = [
    path("elections/<int:election_id>/token/validate/", views.voter_token_validate, name="voter-token-validate"),
    path("elections/<int:election_id>/vote/", views.vote_cast, name="vote-cast"),
    path("elections/<int:election_id>/vote/all/", views.vote_cast_all, name="vote-cast-all"),
    path("elections/<int:election_id>/results/", views.election_results_view, name="election-results"),
    path(
        "elections/<int:election_id>/ballots/<int:ballot_id>/results/",
        views.ballot_results_view,
        name="ballot-results",
    ),
    path("elections/<int:election_id>/voters/", views.election_voters, name="election-voters"),
    path("elections/<int:election_id>/voters/import/", views.election_voters_import, name="election-voters-import"),
    path(
        "elections/<int:election_id>/voters/<int:voter_token_id>/delete/",
        views.election_voter_delete,
        name="election-voter-delete",
    ),
]
