"""
Tests for decision snapshots and derived predicates.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from shora.decisions.entities import (
    Decision,
    DecisionVote,
    basic_info,
    can_user_vote,
    get_user_vote,
    has_reached_quorum,
    has_user_voted,
    is_lapsed,
    is_voting_open,
    recommended_outcome,
    required_votes,
    total_votes,
    vote_counts,
)
from shora.decisions.enums import DecisionStatus, ResolveOutcome, VoteChoice

from tests.conftest import START


def make_decision(**overrides) -> Decision:
    data = {
        "place_id": uuid4(),
        "shora_id": uuid4(),
        "title": "Repair the main bridge",
        "created_at": START,
        "updated_at": START,
    }
    data.update(overrides)
    return Decision(**data)


def with_votes(decision: Decision, *choices: VoteChoice) -> Decision:
    votes = dict(decision.votes)
    for choice in choices:
        user = uuid4()
        votes[user] = DecisionVote(user_id=user, choice=choice, timestamp=START)
    return decision.model_copy(update={"votes": votes})


class TestDefaults:
    """Tests for a freshly created snapshot."""

    def test_new_decision_is_draft(self) -> None:
        decision = make_decision()

        assert decision.status == DecisionStatus.DRAFT
        assert decision.quorum_required == 50
        assert decision.votes == {}
        assert decision.version == 0

    def test_snapshot_is_immutable(self) -> None:
        decision = make_decision()

        with pytest.raises(Exception):
            decision.status = DecisionStatus.PROPOSED  # type: ignore[misc]

    def test_draft_without_deadline_is_not_open(self) -> None:
        """A draft with no deadline never reports voting as open."""
        decision = make_decision()

        assert is_voting_open(decision, START) is False

    def test_proposed_without_deadline_is_not_open(self) -> None:
        decision = make_decision(status=DecisionStatus.PROPOSED)

        assert is_voting_open(decision, START) is False


class TestVotingWindow:
    """Tests for the deadline-gated voting window."""

    def test_open_before_deadline(self) -> None:
        decision = make_decision(
            status=DecisionStatus.PROPOSED, voting_deadline=START + timedelta(days=1)
        )

        assert is_voting_open(decision, START) is True
        assert is_lapsed(decision, START) is False

    def test_closed_at_deadline(self) -> None:
        deadline = START + timedelta(days=1)
        decision = make_decision(status=DecisionStatus.PROPOSED, voting_deadline=deadline)

        assert is_voting_open(decision, deadline) is False
        assert is_lapsed(decision, deadline) is True

    def test_closed_when_not_proposed(self) -> None:
        decision = make_decision(
            status=DecisionStatus.APPROVED, voting_deadline=START + timedelta(days=1)
        )

        assert is_voting_open(decision, START) is False
        assert is_lapsed(decision, START + timedelta(days=2)) is False


class TestTally:
    """Tests for vote counting and quorum."""

    def test_vote_counts_scenario(self) -> None:
        """yes, yes, no at 50% quorum."""
        decision = with_votes(
            make_decision(quorum_required=50), VoteChoice.YES, VoteChoice.YES, VoteChoice.NO
        )

        counts = vote_counts(decision)

        assert (counts.yes, counts.no, counts.abstain) == (2, 1, 0)
        assert total_votes(decision) == 3
        assert required_votes(decision) == 2
        assert has_reached_quorum(decision) is True

    def test_quorum_without_roster_holds_with_no_votes(self) -> None:
        decision = make_decision(quorum_required=100)

        assert required_votes(decision) == 0
        assert has_reached_quorum(decision) is True

    def test_quorum_against_roster(self) -> None:
        decision = with_votes(
            make_decision(quorum_required=50, eligible_voters=9),
            VoteChoice.YES,
            VoteChoice.NO,
            VoteChoice.ABSTAIN,
            VoteChoice.YES,
        )

        assert required_votes(decision) == 5
        assert has_reached_quorum(decision) is False

        decision = with_votes(decision, VoteChoice.NO)

        assert has_reached_quorum(decision) is True

    def test_quorum_rounds_up(self) -> None:
        decision = make_decision(quorum_required=34, eligible_voters=10)

        assert required_votes(decision) == 4

    def test_abstentions_count_toward_quorum(self) -> None:
        decision = with_votes(
            make_decision(eligible_voters=4), VoteChoice.ABSTAIN, VoteChoice.ABSTAIN
        )

        assert has_reached_quorum(decision) is True


class TestUserQueries:
    """Tests for per-user vote lookups."""

    def test_lookup_existing_vote(self) -> None:
        user = uuid4()
        vote = DecisionVote(user_id=user, choice=VoteChoice.NO, timestamp=START, reason="Too costly")
        decision = make_decision(
            status=DecisionStatus.PROPOSED,
            voting_deadline=START + timedelta(hours=1),
            votes={user: vote},
        )

        assert has_user_voted(decision, user) is True
        assert get_user_vote(decision, user) == vote
        assert can_user_vote(decision, user, START) is False

    def test_lookup_missing_vote(self) -> None:
        decision = make_decision(
            status=DecisionStatus.PROPOSED, voting_deadline=START + timedelta(hours=1)
        )
        user = uuid4()

        assert has_user_voted(decision, user) is False
        assert get_user_vote(decision, user) is None
        assert can_user_vote(decision, user, START) is True

    def test_votes_keep_cast_order(self) -> None:
        decision = with_votes(make_decision(), VoteChoice.NO, VoteChoice.YES, VoteChoice.ABSTAIN)

        choices = [v.choice for v in decision.votes.values()]

        assert choices == [VoteChoice.NO, VoteChoice.YES, VoteChoice.ABSTAIN]


class TestRecommendedOutcome:
    """Tests for the tally-based outcome."""

    def test_majority_yes_approves(self) -> None:
        decision = with_votes(make_decision(), VoteChoice.YES, VoteChoice.YES, VoteChoice.NO)

        assert recommended_outcome(decision) == ResolveOutcome.APPROVE

    def test_tie_rejects(self) -> None:
        decision = with_votes(make_decision(), VoteChoice.YES, VoteChoice.NO)

        assert recommended_outcome(decision) == ResolveOutcome.REJECT

    def test_no_votes_rejects(self) -> None:
        assert recommended_outcome(make_decision()) == ResolveOutcome.REJECT

    def test_missing_quorum_rejects(self) -> None:
        decision = with_votes(make_decision(eligible_voters=10), VoteChoice.YES)

        assert recommended_outcome(decision) == ResolveOutcome.REJECT


class TestBasicInfo:
    def test_summary_fields(self) -> None:
        decision = with_votes(make_decision(), VoteChoice.YES)

        info = basic_info(decision, START)

        assert info["id"] == decision.id
        assert info["total_votes"] == 1
        assert info["vote_counts"] == {"yes": 1, "no": 0, "abstain": 0}
        assert info["is_voting_open"] is False
        assert info["has_reached_quorum"] is True
