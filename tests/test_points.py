"""Tests for the points ledger and rewards."""
import logging

import pytest
from pymongo.errors import PyMongoError

import points
from config import Config
from errors import AlreadyClaimed, NotFound, Unauthorized
from schemas import RewardEarnedNotification


@pytest.fixture
def users(stack):
    stack.users.register("alice", "alice@example.com", "Alice")
    stack.users.register("bob", "bob@example.com", "Bob")
    stack.users.register("carol", "carol@example.com")


class TestGrant:
    """PointsLedger.grant"""

    def test_grant_returns_new_balance(self, stack, users):
        assert stack.points.grant("alice", 25) == Config.STARTING_POINTS + 25
        assert stack.points.grant("alice", -5) == Config.STARTING_POINTS + 20
        assert stack.points.balance("alice") == Config.STARTING_POINTS + 20

    def test_grant_appends_reward(self, stack, users):
        stack.points.grant("alice", -5)
        reward = stack.points.rewards_for("alice")[0]
        assert reward.points_earned == -5
        assert reward.description == "Used 5 points"
        assert reward.claimed is True

    def test_unknown_user(self, stack):
        with pytest.raises(NotFound):
            stack.points.grant("nobody", 10)

    def test_reward_append_failure_keeps_balance(self, stack, users, monkeypatch, caplog):
        def broken(*args, **kwargs):
            raise PyMongoError("write concern timeout")

        monkeypatch.setattr(points, "create_document", broken)
        with caplog.at_level(logging.ERROR):
            balance = stack.points.grant("alice", 10)

        assert balance == Config.STARTING_POINTS + 10
        assert stack.points.balance("alice") == balance
        assert stack.points.rewards_for("alice") == []
        assert "was not written" in caplog.text

    def test_legacy_grant(self, legacy_stack):
        legacy_stack.users.register("alice", "alice@example.com")
        assert legacy_stack.points.grant("alice", 10) == Config.STARTING_POINTS + 10


class TestRewards:
    """Unclaimed rewards and claiming them."""

    def test_reward_notifies_and_claim_credits(self, stack, users):
        reward_id = stack.points.reward("bob", 30, "Weekly streak")

        inbox = stack.notifications.list_for("bob")
        assert isinstance(inbox[0], RewardEarnedNotification)
        assert inbox[0].data.points_earned == 30
        assert stack.points.balance("bob") == Config.STARTING_POINTS

        assert stack.points.claim(reward_id, "bob") == Config.STARTING_POINTS + 30
        with pytest.raises(AlreadyClaimed):
            stack.points.claim(reward_id, "bob")

    def test_claim_by_someone_else(self, stack, users):
        reward_id = stack.points.reward("bob", 30, "Weekly streak")
        with pytest.raises(Unauthorized):
            stack.points.claim(reward_id, "alice")

    def test_claim_unknown(self, stack):
        with pytest.raises(NotFound):
            stack.points.claim("000000000000000000000000")


class TestStandings:

    def test_ranking(self, stack, users):
        stack.points.grant("carol", 50)
        stack.points.grant("bob", 20)
        assert stack.points.ranking("carol") == 1
        assert stack.points.ranking("bob") == 2
        assert stack.points.ranking("alice") == 3
        assert stack.points.ranking("nobody") == -1

    def test_leaderboard(self, stack, users):
        stack.points.grant("carol", 50)
        board = stack.points.leaderboard(limit=2)
        assert [entry.id for entry in board][0] == "carol"
        assert board[0].display_name == "Anonymous"
        assert board[0].points == Config.STARTING_POINTS + 50
        assert len(board) == 2
