import pytest

from peon.environment import Environment
from peon.models import EvaluationCycleError


class TestEnvironment:
    """Test $VAR substitution in build environments."""

    def test_plain_values_are_unchanged(self):
        env = Environment({"FOO": "bar"})
        assert env.evaluate("nothing to see") == "nothing to see"
        assert env.evaluate_all() == {"FOO": "bar"}

    def test_substitutes_variables(self):
        env = Environment({"FOO": "foo", "BAR": "bar"})
        assert env.evaluate("$FOO and $BAR") == "foo and bar"

    def test_missing_variable_evaluates_to_empty_string(self):
        env = Environment({})
        assert env.evaluate("a$MISSING.b") == "a.b"

    def test_longest_name_wins(self):
        env = Environment({"foo": "short", "foobar": "long"})
        assert env.evaluate("$foobar") == "long"
        assert env.evaluate("$foo-bar") == "short-bar"

    def test_recursive_evaluation(self):
        env = Environment({
            "PEON_REPO_NAME": "site",
            "PEON_REF": "main",
            "PEON_ROOT_URL": "/root/url/$PEON_REPO_NAME/$PEON_REF",
            "PUBLIC_URL": "$PEON_ROOT_URL/static",
        })
        assert env.evaluate_all()["PUBLIC_URL"] == "/root/url/site/main/static"

    @pytest.mark.parametrize(
        "value",
        ["plain", "$PUBLIC_URL", "$PEON_ROOT_URL/$PEON_REF", "$MISSING-$PEON_REF", "price: 5$"],
    )
    def test_evaluating_output_again_changes_nothing(self, value):
        env = Environment({
            "PEON_REPO_NAME": "site",
            "PEON_REF": "main",
            "PEON_ROOT_URL": "/root/url/$PEON_REPO_NAME/$PEON_REF",
            "PUBLIC_URL": "$PEON_ROOT_URL/static",
        })
        once = env.evaluate(value)
        assert env.evaluate(once) == once

    def test_evaluate_all_does_not_mutate(self):
        raw = {"A": "$B", "B": "b"}
        env = Environment(raw)
        assert env.evaluate_all() == {"A": "b", "B": "b"}
        assert raw == {"A": "$B", "B": "b"}
        assert env["A"] == "$B"

    def test_variable_used_twice_is_not_a_cycle(self):
        env = Environment({"A": "$B$B", "B": "$C", "C": "c"})
        assert env.evaluate("$A") == "cc"

    def test_self_reference_raises(self):
        env = Environment({"foo": "$foo"})
        with pytest.raises(EvaluationCycleError) as exc_info:
            env.evaluate_all()
        assert exc_info.value.chain == ["foo", "foo"]

    def test_cycle_reports_full_chain(self):
        env = Environment({"foo": "$bar", "bar": "$baz", "baz": "$foo"})
        with pytest.raises(EvaluationCycleError) as exc_info:
            env.evaluate("$foo")
        assert str(exc_info.value) == "Evaluation loop: foo => bar => baz => foo"

    def test_contains(self):
        env = Environment({"FOO": ""})
        assert "FOO" in env
        assert "BAR" not in env
