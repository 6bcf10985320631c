"""
Unit tests for conflict policies and the translation of resolutions into
executable actions.
"""

import pytest

from collection_sync.models import Action
from collection_sync.models import Change
from collection_sync.models import ConfigError
from collection_sync.models import PlanEntry
from collection_sync.models import Resolution
from collection_sync.sync.conflicts import ConflictResolver
from collection_sync.sync.conflicts import always_defer
from collection_sync.sync.conflicts import effective_action
from collection_sync.sync.conflicts import get_policy
from collection_sync.sync.conflicts import prefer_a
from collection_sync.sync.conflicts import prefer_b


def _conflict(change_a=Change.CHANGED, change_b=Change.CHANGED, aid="c1") -> PlanEntry:
    return PlanEntry(
        association_id=aid,
        action=Action.CONFLICT,
        change_a=change_a,
        change_b=change_b,
        identity_a="x.ics" if change_a.present else None,
        identity_b="y.ics" if change_b.present else None,
        fingerprint_a="e3" if change_a.present else None,
        fingerprint_b="e4" if change_b.present else None,
    )


class TestPolicies:
    def test_builtin_names(self):
        assert get_policy("prefer-a") is prefer_a
        assert get_policy("prefer-b") is prefer_b
        assert get_policy("defer") is always_defer

    def test_unknown_name_raises_config_error(self):
        with pytest.raises(ConfigError):
            get_policy("merge")


class TestResolver:
    def test_policy_called_once_per_conflict(self):
        calls = []

        def policy(association_id, fingerprint_a, fingerprint_b):
            calls.append((association_id, fingerprint_a, fingerprint_b))
            return Resolution.PREFER_B

        no_op = PlanEntry("n1", Action.NO_OP, Change.UNCHANGED, Change.UNCHANGED)
        plan = [_conflict(aid="c1"), no_op, _conflict(aid="c2")]
        resolved = ConflictResolver(policy).resolve(plan)

        assert calls == [("c1", "e3", "e4"), ("c2", "e3", "e4")]
        assert [e.resolution for e in resolved] == [Resolution.PREFER_B, None, Resolution.PREFER_B]
        assert plan[0].resolution is None

    def test_policy_may_decide_per_association(self):
        def policy(association_id, fingerprint_a, fingerprint_b):
            return Resolution.PREFER_A if association_id == "c1" else Resolution.DEFER

        resolved = ConflictResolver(policy).resolve([_conflict(aid="c1"), _conflict(aid="c2")])
        assert [e.resolution for e in resolved] == [Resolution.PREFER_A, Resolution.DEFER]

    def test_policy_returning_garbage_raises(self):
        with pytest.raises(TypeError):
            ConflictResolver(lambda *args: "a").resolve([_conflict()])


class TestEffectiveAction:
    @pytest.mark.parametrize(
        "change_a, change_b, resolution, expected",
        [
            (Change.CHANGED, Change.CHANGED, Resolution.PREFER_A, Action.UPDATE_B_FROM_A),
            (Change.CHANGED, Change.CHANGED, Resolution.PREFER_B, Action.UPDATE_A_FROM_B),
            (Change.ADDED, Change.ADDED, Resolution.PREFER_A, Action.UPDATE_B_FROM_A),
            # edit on A, delete on B
            (Change.CHANGED, Change.DELETED, Resolution.PREFER_A, Action.CREATE_ON_B),
            (Change.CHANGED, Change.DELETED, Resolution.PREFER_B, Action.DELETE_ON_A),
            # delete on A, edit on B
            (Change.DELETED, Change.CHANGED, Resolution.PREFER_A, Action.DELETE_ON_B),
            (Change.DELETED, Change.CHANGED, Resolution.PREFER_B, Action.CREATE_ON_A),
            (Change.CHANGED, Change.CHANGED, Resolution.DEFER, Action.NO_OP),
        ],
    )
    def test_resolution_translation(self, change_a, change_b, resolution, expected):
        entry = ConflictResolver(lambda *args: resolution).resolve([_conflict(change_a, change_b)])
        assert effective_action(entry[0]) is expected

    def test_unresolved_conflict_is_not_executed(self):
        assert effective_action(_conflict()) is Action.NO_OP

    def test_non_conflicts_pass_through(self):
        entry = PlanEntry("u1", Action.UPDATE_B_FROM_A, Change.CHANGED, Change.UNCHANGED)
        assert effective_action(entry) is Action.UPDATE_B_FROM_A
