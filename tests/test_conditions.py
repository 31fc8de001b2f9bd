import unittest
from typing import Any

from flageval import (
    EvaluationReason,
    Evaluator,
    SpecSnapshot,
    SpecStore,
    User,
    UserAgentInfo,
    _hash_to_bucket,
    _segment_hash_prefix,
)


def _single_condition_gate(name: str, condition: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": name,
        "type": "feature_gate",
        "salt": f"{name}-salt",
        "defaultValue": False,
        "rules": [
            {
                "id": f"{name}_rule",
                "passPercentage": 100,
                "returnValue": True,
                "conditions": [condition],
            }
        ],
    }


def _store(*gates: dict[str, Any], app_id: str | None = None) -> SpecStore:
    store = SpecStore()
    store.load(SpecSnapshot.from_dict({"feature_gates": list(gates), "time": 1, "app_id": app_id}))
    return store


class TestOperators(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        store = _store()
        store.set_id_list("employees", {_segment_hash_prefix("u1")})
        cls._evaluator = Evaluator(store)

    def test_operators(self):
        cases = [
            # operator, value, target, expected
            ("gt", 5, 4, True),
            ("gt", "5", "4.5", True),
            ("gt", 4, 4, False),
            ("gt", True, 0, False),
            ("gt", None, 1, False),
            ("gt", "abc", 1, False),
            ("gte", 4, 4, True),
            ("lt", 3, "4", True),
            ("lte", 4, 4.0, True),
            ("lte", 5, 4, False),
            ("version_gt", "1.2.3-beta", "1.2.0", True),
            ("version_gt", "1.2.0", "1.2", False),
            ("version_gte", "1.2", "1.2.0", True),
            ("version_lt", "1.2.3", "1.10", True),
            ("version_lte", "1.10", "1.9", False),
            ("version_eq", "1.0", "1", True),
            ("version_neq", "1.0.1", "1", True),
            ("version_gt", "1.a", "1", False),
            ("version_gt", None, "1", False),
            ("any", "iPhone", ["android", "iphone"], True),
            ("any", 5, ["5"], True),
            ("any", True, ["true"], True),
            ("any", "x", "x", False),
            ("any", None, ["a"], False),
            ("none", None, ["a"], True),
            ("none", "x", ["a"], True),
            ("none", "A", ["a"], False),
            ("any_case_sensitive", "iPhone", ["iphone"], False),
            ("any_case_sensitive", "iPhone", ["iPhone"], True),
            ("none_case_sensitive", "iPhone", ["iphone"], True),
            ("str_starts_with_any", "Hello world", ["hello"], True),
            ("str_ends_with_any", "test@STATSIG.com", ["@statsig.com"], True),
            ("str_ends_with_any", "test@statsig.io", ["@statsig.com"], False),
            ("str_contains_any", "testuser@statsig.com", ["@statsig.com"], True),
            ("str_contains_none", "abc", ["d"], True),
            ("str_contains_none", "abc", ["B"], False),
            ("str_matches", "abc123", "\\d+", True),
            ("str_matches", "abc", "^\\d+$", False),
            ("str_matches", "abc", "[", False),
            ("str_matches", None, "a", False),
            ("eq", 1, 1.0, True),
            ("eq", "a", "a", True),
            ("eq", None, None, True),
            ("eq", True, 1, False),
            ("eq", "1", 1, False),
            ("neq", True, 1, True),
            ("neq", "a", "a", False),
            ("array_contains_any", [1, 2], [2, 3], True),
            ("array_contains_any", [1, 2], ["2"], True),
            ("array_contains_any", [1, 2], [3], False),
            ("array_contains_any", "1", [1], False),
            ("array_contains_none", [1, 2], [3], True),
            ("array_contains_none", [1, 2], [1], False),
            ("array_contains_all", [1, 2, 3], [1, 3], True),
            ("array_contains_all", [1, 2], [1, 4], False),
            ("not_array_contains_all", [1, 2], [1, 4], True),
            ("not_array_contains_all", [1, 2], [1, 2], False),
            ("before", "1600000000", 1700000000000, True),
            ("before", 1700000000000, "1600000000", False),
            ("after", "2024-01-02T00:00:00+00:00", "2024-01-01T00:00:00Z", True),
            ("after", "2024-01-01T00:00:00", 0, False),
            ("after", "yesterday", 0, False),
            ("on", 1704067200, "2024-01-01T23:59:59+00:00", True),
            ("on", 1704067200000, 1704153600000, False),
            ("on", None, 1704067200000, False),
            ("in_segment_list", "u1", "employees", True),
            ("in_segment_list", "u2", "employees", False),
            ("in_segment_list", None, "employees", False),
            ("in_segment_list", "u1", "contractors", False),
            ("not_in_segment_list", "u2", "employees", True),
            ("not_in_segment_list", "u1", "employees", False),
            ("not_in_segment_list", "u1", "contractors", False),
        ]
        for op, value, target, expected in cases:
            with self.subTest(f"{value!r} {op} {target!r}"):
                self.assertIs(self._evaluator._evaluate_operator(op, value, target), expected)

    def test_unknown_operator(self):
        self.assertIsNone(self._evaluator._evaluate_operator("is_odd", 1, None))


class TestConditions(unittest.TestCase):
    def test_user_field(self):
        store = _store(
            _single_condition_gate(
                "on_for_statsig_email",
                {"type": "user_field", "field": "email", "operator": "str_contains_any", "targetValue": ["@statsig.com"]},
            )
        )
        evaluator = Evaluator(store)
        e = evaluator.check_gate(User(user_id="u1", email="testuser@statsig.com"), "on_for_statsig_email")
        self.assertTrue(e.boolean_value)
        self.assertEqual(e.rule_id, "on_for_statsig_email_rule")
        e = evaluator.check_gate(User(user_id="u1"), "on_for_statsig_email")
        self.assertFalse(e.boolean_value)
        self.assertEqual(e.rule_id, "default")

    def test_version_with_prerelease(self):
        store = _store(
            _single_condition_gate(
                "new_app",
                {"type": "user_field", "field": "appVersion", "operator": "version_gt", "targetValue": "1.2.0"},
            )
        )
        evaluator = Evaluator(store)
        self.assertTrue(evaluator.check_gate(User(app_version="1.2.3-beta"), "new_app").boolean_value)
        self.assertFalse(evaluator.check_gate(User(app_version="1.1.9"), "new_app").boolean_value)

    def test_environment_field(self):
        store = _store(
            _single_condition_gate(
                "staging_only",
                {"type": "environment_field", "field": "tier", "operator": "any", "targetValue": ["staging"]},
            )
        )
        evaluator = Evaluator(store)
        self.assertTrue(evaluator.check_gate(User(statsig_environment={"tier": "staging"}), "staging_only").boolean_value)
        self.assertFalse(evaluator.check_gate(User(), "staging_only").boolean_value)
        evaluator.set_default_environment({"tier": "staging"})
        self.assertTrue(evaluator.check_gate(User(), "staging_only").boolean_value)
        # The user's own environment wins over the default.
        self.assertFalse(evaluator.check_gate(User(statsig_environment={"tier": "production"}), "staging_only").boolean_value)
        evaluator.set_default_environment(None)
        self.assertFalse(evaluator.check_gate(User(), "staging_only").boolean_value)

    def test_ip_based(self):
        store = _store(
            _single_condition_gate(
                "au_only",
                {"type": "ip_based", "field": "country", "operator": "any", "targetValue": ["AU"]},
            )
        )
        lookups = []

        def country_lookup(ip: str) -> str | None:
            lookups.append(ip)
            return {"1.2.3.4": "AU"}.get(ip)

        evaluator = Evaluator(store, country_lookup=country_lookup)
        self.assertTrue(evaluator.check_gate(User(ip="1.2.3.4"), "au_only").boolean_value)
        self.assertFalse(evaluator.check_gate(User(ip="5.6.7.8"), "au_only").boolean_value)
        self.assertEqual(lookups, ["1.2.3.4", "5.6.7.8"])
        # An explicit country skips the lookup.
        self.assertTrue(evaluator.check_gate(User(ip="5.6.7.8", country="AU"), "au_only").boolean_value)
        self.assertEqual(len(lookups), 2)

        evaluator = Evaluator(store, country_lookup=country_lookup, disable_ip_resolution=True)
        self.assertFalse(evaluator.check_gate(User(ip="1.2.3.4"), "au_only").boolean_value)
        self.assertEqual(len(lookups), 2)

    def test_ua_based(self):
        store = _store(
            _single_condition_gate(
                "ios_17",
                {"type": "ua_based", "field": "os_version", "operator": "version_gte", "targetValue": "17.0"},
            ),
            _single_condition_gate(
                "safari",
                {"type": "ua_based", "field": "browser_name", "operator": "any", "targetValue": ["safari"]},
            ),
        )

        def parser(ua: str) -> UserAgentInfo | None:
            if "iPhone" not in ua:
                return None
            return UserAgentInfo(os_name="iOS", os_major="17", os_minor="1", browser_name="Mobile Safari")

        evaluator = Evaluator(store, user_agent_parser=parser)
        iphone = User(user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X)")
        self.assertTrue(evaluator.check_gate(iphone, "ios_17").boolean_value)
        self.assertFalse(evaluator.check_gate(iphone, "safari").boolean_value)
        self.assertFalse(evaluator.check_gate(User(user_agent="curl/8.0"), "ios_17").boolean_value)
        self.assertFalse(evaluator.check_gate(User(), "ios_17").boolean_value)
        # Without a parser only explicit user fields are consulted.
        self.assertFalse(Evaluator(store).check_gate(iphone, "ios_17").boolean_value)
        self.assertTrue(Evaluator(store).check_gate(User(custom={"os_version": "17.2"}), "ios_17").boolean_value)

    def test_unit_id(self):
        store = _store(
            _single_condition_gate(
                "company_c1",
                {"type": "unit_id", "idType": "companyID", "operator": "any", "targetValue": ["c1"]},
            )
        )
        evaluator = Evaluator(store)
        self.assertTrue(evaluator.check_gate(User(custom_ids={"companyID": "c1"}), "company_c1").boolean_value)
        self.assertFalse(evaluator.check_gate(User(user_id="c1"), "company_c1").boolean_value)

    def test_user_bucket(self):
        bucket = _hash_to_bucket("bucket-salt.u1") % 1000

        def gate(name: str, target: int) -> dict[str, Any]:
            return _single_condition_gate(
                name,
                {"type": "user_bucket", "operator": "lt", "targetValue": target, "additionalValues": {"salt": "bucket-salt"}},
            )

        evaluator = Evaluator(_store(gate("above", bucket + 1), gate("at", bucket)))
        self.assertTrue(evaluator.check_gate(User(user_id="u1"), "above").boolean_value)
        self.assertFalse(evaluator.check_gate(User(user_id="u1"), "at").boolean_value)

    def test_current_time(self):
        store = _store(
            _single_condition_gate("launched", {"type": "current_time", "operator": "after", "targetValue": 1600000000000}),
            _single_condition_gate("ended", {"type": "current_time", "operator": "before", "targetValue": 1600000000000}),
        )
        evaluator = Evaluator(store)
        self.assertTrue(evaluator.check_gate(User(), "launched").boolean_value)
        self.assertFalse(evaluator.check_gate(User(), "ended").boolean_value)

    def test_target_app(self):
        store = _store(
            _single_condition_gate("app_1_only", {"type": "target_app", "operator": "any", "targetValue": ["app_1"]}),
            app_id="app_1",
        )
        self.assertTrue(Evaluator(store).check_gate(User(), "app_1_only").boolean_value)
        self.assertFalse(Evaluator(_store(_single_condition_gate("app_1_only", {"type": "target_app", "operator": "any", "targetValue": ["app_1"]}))).check_gate(User(), "app_1_only").boolean_value)

    def test_case_insensitive_kind(self):
        store = _store(_single_condition_gate("public", {"type": "PUBLIC"}))
        self.assertTrue(Evaluator(store).check_gate(User(), "public").boolean_value)

    def test_unsupported_condition_fails(self):
        store = _store(
            _single_condition_gate("weird_type", {"type": "moon_phase", "operator": "any", "targetValue": ["full"]}),
            _single_condition_gate("weird_operator", {"type": "user_field", "field": "email", "operator": "rhymes_with", "targetValue": "x"}),
        )
        evaluator = Evaluator(store)
        for name in ["weird_type", "weird_operator"]:
            with self.subTest(name):
                with self.assertLogs("flageval", "ERROR"):
                    e = evaluator.check_gate(User(email="a@b.c"), name)
                self.assertFalse(e.boolean_value)
                self.assertEqual(e.rule_id, "default")
                self.assertEqual(e.reason, EvaluationReason.NETWORK)

    def test_unsupported_condition_escapes(self):
        store = _store(_single_condition_gate("weird_type", {"type": "moon_phase"}))
        evaluator = Evaluator(store, escape_unsupported=True)
        with self.assertLogs("flageval", "ERROR"):
            e = evaluator.check_gate(User(), "weird_type")
        self.assertFalse(e.boolean_value)
        self.assertEqual(e.json_value, False)
        self.assertEqual(e.reason, EvaluationReason.UNSUPPORTED)
