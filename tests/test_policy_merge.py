"""Tests for the provider policy merge engine."""

from __future__ import annotations

import copy

import pytest

from provider_shim.policy.merge import (
    PolicyConflictError,
    apply_provider_policy,
    find_conflict,
    intersect_only,
    values_equal,
)
from provider_shim.policy.schema import MergeMode, ProviderPolicy


def _policy(**fields: object) -> ProviderPolicy:
    return ProviderPolicy.model_validate(fields)


FIREWORKS_MOONSHOT = _policy(only=["fireworks", "moonshotai"])


class TestEmptyPolicy:
    def test_body_returned_unchanged(self) -> None:
        body = {"model": "m", "provider": {"only": ["x"]}}
        result = apply_provider_policy(body, ProviderPolicy(), MergeMode.STRICT)
        assert result is body

    def test_no_provider_key_added(self) -> None:
        result = apply_provider_policy({"model": "m"}, ProviderPolicy(), MergeMode.MERGE)
        assert "provider" not in result


class TestMergeMode:
    def test_missing_client_object_gets_policy(self) -> None:
        policy = _policy(only=["fireworks"], sort="throughput", allow_fallbacks=False)
        result = apply_provider_policy({"model": "m"}, policy, MergeMode.MERGE)
        assert result["provider"] == {
            "only": ["fireworks"],
            "sort": "throughput",
            "allow_fallbacks": False,
        }
        assert result["model"] == "m"

    def test_null_client_object_gets_policy(self) -> None:
        result = apply_provider_policy(
            {"model": "m", "provider": None}, FIREWORKS_MOONSHOT, MergeMode.MERGE
        )
        assert result["provider"] == {"only": ["fireworks", "moonshotai"]}

    def test_client_fields_win_and_policy_fills_gaps(self) -> None:
        policy = _policy(only=["fireworks"], sort="price", zdr=True)
        body = {"provider": {"only": ["hyperbolic"], "ignore": ["azure"]}}
        result = apply_provider_policy(body, policy, MergeMode.MERGE)
        assert result["provider"] == {
            "only": ["hyperbolic"],
            "ignore": ["azure"],
            "sort": "price",
            "zdr": True,
        }

    def test_unknown_client_fields_preserved(self) -> None:
        body = {"provider": {"experimental_flag": 1}}
        result = apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.MERGE)
        assert result["provider"]["experimental_flag"] == 1
        assert result["provider"]["only"] == ["fireworks", "moonshotai"]

    def test_non_object_provider_rejected(self) -> None:
        with pytest.raises(PolicyConflictError) as exc_info:
            apply_provider_policy({"provider": "fireworks"}, FIREWORKS_MOONSHOT, MergeMode.MERGE)
        assert exc_info.value.field == "provider"

    def test_nested_objects_from_policy(self) -> None:
        policy = _policy(max_price={"prompt": 1, "completion": 4})
        result = apply_provider_policy({}, policy, MergeMode.MERGE)
        assert result["provider"] == {"max_price": {"prompt": 1.0, "completion": 4.0}}


class TestOverrideMode:
    @pytest.mark.parametrize(
        "client",
        [None, {}, {"only": ["hyperbolic"], "sort": "latency"}, "not-an-object", 42],
    )
    def test_result_always_equals_policy(self, client: object) -> None:
        policy = _policy(only=["fireworks"], sort="price")
        body = {"model": "m", "provider": client}
        result = apply_provider_policy(body, policy, MergeMode.OVERRIDE)
        assert result["provider"] == policy.as_routing_object()

    def test_soft_enforce_ignored(self) -> None:
        body = {"provider": {"only": ["fireworks", "hyperbolic"]}}
        result = apply_provider_policy(
            body, FIREWORKS_MOONSHOT, MergeMode.OVERRIDE, soft_enforce_only=True
        )
        assert result["provider"] == {"only": ["fireworks", "moonshotai"]}


class TestStrictMode:
    def test_conflicting_only_fails(self) -> None:
        body = {"provider": {"only": ["hyperbolic"]}}
        with pytest.raises(PolicyConflictError) as exc_info:
            apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.STRICT)
        assert exc_info.value.field == "only"
        assert exc_info.value.code == "ERR_PROVIDER_CONFLICT"
        assert str(exc_info.value) == "provider.only conflicts with enforced policy"

    def test_exact_match_succeeds(self) -> None:
        body = {"provider": {"only": ["fireworks", "moonshotai"]}}
        result = apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.STRICT)
        assert result["provider"]["only"] == ["fireworks", "moonshotai"]

    def test_order_matters_for_lists(self) -> None:
        body = {"provider": {"only": ["moonshotai", "fireworks"]}}
        with pytest.raises(PolicyConflictError):
            apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.STRICT)

    def test_fields_policy_does_not_set_never_conflict(self) -> None:
        body = {"provider": {"sort": "latency", "ignore": ["azure"]}}
        result = apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.STRICT)
        assert result["provider"] == {
            "only": ["fireworks", "moonshotai"],
            "sort": "latency",
            "ignore": ["azure"],
        }

    def test_explicit_null_conflicts(self) -> None:
        body = {"provider": {"only": None}}
        with pytest.raises(PolicyConflictError) as exc_info:
            apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.STRICT)
        assert exc_info.value.field == "only"

    def test_integer_and_float_prices_match(self) -> None:
        policy = _policy(max_price={"prompt": 1})
        body = {"provider": {"max_price": {"prompt": 1}}}
        result = apply_provider_policy(body, policy, MergeMode.STRICT)
        assert result["provider"]["max_price"] == {"prompt": 1}

    def test_bool_does_not_equal_number(self) -> None:
        policy = _policy(preferred_min_throughput=1)
        body = {"provider": {"preferred_min_throughput": True}}
        with pytest.raises(PolicyConflictError):
            apply_provider_policy(body, policy, MergeMode.STRICT)

    def test_first_conflict_in_field_order(self) -> None:
        policy = _policy(order=["a"], only=["b"])
        body = {"provider": {"only": ["x"], "order": ["y"]}}
        with pytest.raises(PolicyConflictError) as exc_info:
            apply_provider_policy(body, policy, MergeMode.STRICT)
        assert exc_info.value.field == "order"

    def test_non_object_provider_rejected(self) -> None:
        with pytest.raises(PolicyConflictError) as exc_info:
            apply_provider_policy({"provider": ["x"]}, FIREWORKS_MOONSHOT, MergeMode.STRICT)
        assert exc_info.value.field == "provider"


class TestSoftEnforce:
    def test_only_lists_intersected(self) -> None:
        body = {"provider": {"only": ["fireworks", "hyperbolic"]}}
        result = apply_provider_policy(
            body, FIREWORKS_MOONSHOT, MergeMode.MERGE, soft_enforce_only=True
        )
        assert result["provider"]["only"] == ["fireworks"]

    def test_intersection_keeps_client_order(self) -> None:
        assert intersect_only(["a", "b", "c"], ["c", "x", "a"]) == ["c", "a"]

    def test_empty_client_list_not_intersected(self) -> None:
        body = {"provider": {"only": []}}
        result = apply_provider_policy(
            body, FIREWORKS_MOONSHOT, MergeMode.MERGE, soft_enforce_only=True
        )
        assert result["provider"]["only"] == []

    def test_disabled_client_list_wins(self) -> None:
        body = {"provider": {"only": ["hyperbolic"]}}
        result = apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.MERGE)
        assert result["provider"]["only"] == ["hyperbolic"]


class TestPurity:
    def test_body_not_mutated(self) -> None:
        body = {"model": "m", "provider": {"only": ["fireworks"], "sort": {"by": "price"}}}
        snapshot = copy.deepcopy(body)
        policy = _policy(only=["fireworks"], zdr=True)
        for mode in MergeMode:
            apply_provider_policy(body, policy, mode, soft_enforce_only=True)
        assert body == snapshot

    def test_result_does_not_alias_client_object(self) -> None:
        body = {"provider": {"sort": {"by": "price"}}}
        result = apply_provider_policy(body, FIREWORKS_MOONSHOT, MergeMode.MERGE)
        result["provider"]["sort"]["by"] = "latency"
        assert body["provider"]["sort"]["by"] == "price"

    def test_policy_object_fresh_each_call(self) -> None:
        first = apply_provider_policy({}, FIREWORKS_MOONSHOT, MergeMode.MERGE)
        first["provider"]["only"].append("hyperbolic")
        second = apply_provider_policy({}, FIREWORKS_MOONSHOT, MergeMode.MERGE)
        assert second["provider"]["only"] == ["fireworks", "moonshotai"]


class TestHelpers:
    @pytest.mark.parametrize(
        ("a", "b", "expected"),
        [
            (1, 1.0, True),
            (True, 1, False),
            (False, False, True),
            ({"a": [1, 2]}, {"a": [1, 2]}, True),
            ({"a": 1}, {"a": 1, "b": 2}, False),
            ([1, 2], [2, 1], False),
            ("price", "price", True),
            (None, None, True),
            (None, "x", False),
        ],
    )
    def test_values_equal(self, a: object, b: object, expected: bool) -> None:
        assert values_equal(a, b) is expected

    def test_find_conflict_none_when_compatible(self) -> None:
        assert find_conflict({"only": ["a"]}, {"only": ["a"], "sort": "price"}) is None

    def test_find_conflict_ignores_unknown_client_fields(self) -> None:
        assert find_conflict({"only": ["a"]}, {"custom": True}) is None
