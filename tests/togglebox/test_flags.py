"""Tests for the flag targeting resolver."""
from dataclasses import replace

import pytest

from togglebox.exceptions import ValidationError
from togglebox.flags import (
    EvaluationReason,
    evaluate_flag,
    evaluate_flag_with_tracking,
    evaluate_flags,
    is_enabled,
)
from togglebox.hashing import bucket
from togglebox.schema import (
    CountryTarget,
    EvaluationContext,
    Flag,
    FlagValue,
    ServedValue,
    Targeting,
    ValueType,
)


def _example_flag():
    return Flag.from_dict({
        "platform": "web",
        "environment": "production",
        "flagKey": "button_color",
        "enabled": True,
        "flagType": "string",
        "valueA": "red",
        "valueB": "blue",
        "defaultValue": "A",
        "targeting": {
            "countries": [{"country": "CA", "serveValue": "B"}],
            "forceIncludeUsers": [],
            "forceExcludeUsers": ["u1"],
        },
    })


def test_end_to_end_example():
    """Force-exclude beats country rule; country rule beats default."""
    flag = _example_flag()
    assert evaluate_flag(flag, EvaluationContext("u1", "CA")).served_value is ServedValue.A
    r2 = evaluate_flag(flag, EvaluationContext("u2", "CA"))
    assert r2.served_value is ServedValue.B
    assert r2.value == FlagValue(ValueType.STRING, "blue")
    r3 = evaluate_flag(flag, EvaluationContext("u3", "FR"))
    assert r3.served_value is ServedValue.A
    assert r3.reason == EvaluationReason.DEFAULT


def test_deterministic(bool_flag):
    """Same flag and context always resolve identically."""
    ctx = EvaluationContext("user-42", "US", "en")
    assert evaluate_flag(bool_flag, ctx) == evaluate_flag(bool_flag, ctx)


def test_disabled_flag_serves_default(string_flag):
    """Kill switch wins over targeting and rollout."""
    flag = replace(string_flag, enabled=False, rollout_enabled=True, rollout_percentage_a=100.0)
    result = evaluate_flag(flag, EvaluationContext("u", "US"))
    assert result.served_value is ServedValue.B
    assert result.reason == EvaluationReason.FLAG_DISABLED


def test_force_exclude_precedence(string_flag):
    """Excluded users get the default even when a country rule matches."""
    flag = replace(string_flag, targeting=replace(string_flag.targeting, force_exclude_users=["bob"]))
    result = evaluate_flag(flag, EvaluationContext("bob", "US"))
    assert result.served_value is ServedValue.B
    assert result.reason == EvaluationReason.FORCE_EXCLUDED


def test_country_and_language_rules(string_flag):
    """Language-level serveValue overrides the country-level one."""
    assert evaluate_flag(string_flag, EvaluationContext("u", "US", "en")).served_value is ServedValue.A
    assert evaluate_flag(string_flag, EvaluationContext("u", "US", "es")).served_value is ServedValue.B


def test_country_match_is_case_insensitive(string_flag):
    result = evaluate_flag(string_flag, EvaluationContext("u", "us", "ES"))
    assert result.served_value is ServedValue.B
    assert result.reason.startswith("matched country/language targeting rule for US")


def test_force_include_only_prefixes_reason(string_flag):
    """Force-include does not pick a value; the normal precedence still applies."""
    flag = replace(string_flag, targeting=replace(string_flag.targeting, force_include_users=["vip"]))
    result = evaluate_flag(flag, EvaluationContext("vip", "US"))
    assert result.served_value is ServedValue.A
    assert result.reason.startswith(EvaluationReason.FORCE_INCLUDED_PREFIX)
    fallback = evaluate_flag(flag, EvaluationContext("vip", "FR"))
    assert fallback.reason == EvaluationReason.FORCE_INCLUDED_PREFIX + EvaluationReason.DEFAULT


def test_no_targeting_no_rollout_serves_default():
    flag = Flag(platform="web", environment="prod", flag_key="plain", enabled=True, default_value=ServedValue.A)
    result = evaluate_flag(flag, EvaluationContext("anyone"))
    assert result.served_value is ServedValue.A
    assert result.value.value is True


def test_rollout_follows_bucket(bool_flag):
    """Served letter is A below percentage A, B up to A+B, default past that."""
    flag = replace(bool_flag, rollout_percentage_a=20.0, rollout_percentage_b=30.0, default_value=ServedValue.A)
    for i in range(300):
        uid = f"user-{i}"
        score = bucket(flag.flag_key, uid)
        result = evaluate_flag(flag, EvaluationContext(uid))
        if score < 20:
            assert (result.served_value, result.reason) == (ServedValue.A, EvaluationReason.ROLLOUT)
        elif score < 50:
            assert (result.served_value, result.reason) == (ServedValue.B, EvaluationReason.ROLLOUT)
        else:
            assert (result.served_value, result.reason) == (ServedValue.A, EvaluationReason.ROLLOUT_GAP)


def test_rollout_boundary_30_70(bool_flag):
    """30/70 rollout over 10k users lands near 30% A."""
    flag = replace(bool_flag, rollout_percentage_a=30.0, rollout_percentage_b=70.0)
    served_a = sum(
        1 for i in range(10000)
        if evaluate_flag(flag, EvaluationContext(f"user_{i}")).served_value is ServedValue.A
    )
    assert 2800 <= served_a <= 3200


def test_anonymous_user_is_bucketed(bool_flag):
    """Missing user id buckets as "anonymous"."""
    assert evaluate_flag(bool_flag, EvaluationContext()) == evaluate_flag(bool_flag, EvaluationContext("anonymous"))


def test_evaluate_flags_keys_by_flag(string_flag, bool_flag):
    results = evaluate_flags([string_flag, bool_flag], EvaluationContext("u", "US"))
    assert set(results) == {"checkout_theme", "dark_mode"}


def test_is_enabled(bool_flag, string_flag):
    flag = replace(bool_flag, rollout_enabled=False, default_value=ServedValue.A)
    assert is_enabled(flag, EvaluationContext("u")) is True
    with pytest.raises(ValidationError):
        is_enabled(string_flag, EvaluationContext("u"))


def test_tracking_records_evaluation(string_flag, sink):
    evaluate_flag_with_tracking(string_flag, EvaluationContext("u7", "US", "es"), sink)
    assert sink.evaluations == [("checkout_theme", ServedValue.B, "u7", "US", "es")]


def test_tracking_skips_anonymous(string_flag, sink):
    evaluate_flag_with_tracking(string_flag, EvaluationContext(country="US"), sink)
    assert sink.evaluations == []


def test_tracking_failure_is_swallowed(string_flag):
    """A broken sink never breaks evaluation."""
    class Broken:
        def track_flag_evaluation(self, *args, **kwargs):
            raise RuntimeError("stats down")

    result = evaluate_flag_with_tracking(string_flag, EvaluationContext("u", "US"), Broken())
    assert result.served_value is ServedValue.A


def test_from_dict_defaults():
    """Missing rollout/default fields fall back to A=100, B=0, default B."""
    flag = Flag.from_dict({"platform": "web", "environment": "prod", "flagKey": "f"})
    assert flag.rollout_percentage_a == 100.0
    assert flag.rollout_percentage_b == 0.0
    assert flag.default_value is ServedValue.B
    assert flag.enabled is False
    assert Flag.from_dict(flag.to_dict()) == flag


def test_targeting_with_only_language_rules_falls_through(bool_flag):
    """A country entry without any serveValue for the caller does not match."""
    flag = replace(
        bool_flag,
        rollout_enabled=False,
        targeting=Targeting(countries=[CountryTarget(country="DE")]),
    )
    result = evaluate_flag(flag, EvaluationContext("u", "DE", "de"))
    assert result.reason == EvaluationReason.DEFAULT
