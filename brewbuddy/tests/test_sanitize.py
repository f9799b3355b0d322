import hashlib
import unittest

from brewbuddy.sanitize import (
    clean_altitude,
    normalize_feedback,
    sanitize_coffee_data,
    stable_coffee_uid,
    strip_html,
    truncate_string,
    validate_process,
)


class StripHtmlTests(unittest.TestCase):
    def test_removes_simple_and_complex_tags(self):
        self.assertEqual(strip_html("<b>Bold</b>"), "Bold")
        self.assertEqual(strip_html('<script>alert("xss")</script>'), 'alert("xss")')
        self.assertEqual(strip_html('<div class="test">Content</div>'), "Content")
        self.assertEqual(strip_html("<p>Hello <b>World</b></p>"), "Hello World")

    def test_non_string_inputs(self):
        for value in (None, 123, 1.5, ["<b>"], {"a": 1}, True):
            self.assertEqual(strip_html(value), "")

    def test_removes_entities(self):
        self.assertEqual(strip_html("&lt;script&gt;"), "script")
        self.assertEqual(strip_html("&amp;"), "")
        self.assertEqual(strip_html("Test&nbsp;Text"), "TestText")

    def test_nested_tags_are_fully_removed(self):
        self.assertEqual(strip_html("<script<script>>"), ">")
        self.assertEqual(strip_html("<<script>>alert(1)<</script>>"), ">alert(1)>")
        self.assertEqual(
            strip_html("<b>Normal <script>evil</script> text</b>"), "Normal evil text"
        )

    def test_idempotent(self):
        samples = [
            "<<b>>x<</b>>",
            "a &amp;&lt;b&gt; c",
            "<scr<b>ipt>alert(1)</scr</b>ipt>",
            "plain text",
            "&&lt;;",
        ]
        for sample in samples:
            once = strip_html(sample)
            self.assertEqual(strip_html(once), once)


class TruncateStringTests(unittest.TestCase):
    def test_length_is_min_of_input_and_limit(self):
        for text in ("", "Short", "a" * 200, "b" * 300):
            for limit in (0, 1, 5, 200):
                self.assertEqual(
                    len(truncate_string(text, limit)), min(len(text), limit)
                )

    def test_keeps_prefix(self):
        self.assertEqual(truncate_string("a" * 300, 200), "a" * 200)
        self.assertEqual(truncate_string("Short", 200), "Short")

    def test_non_string(self):
        self.assertEqual(truncate_string(None, 10), "")
        self.assertEqual(truncate_string(42, 10), "")


class CleanAltitudeTests(unittest.TestCase):
    def test_numeric_and_units(self):
        self.assertEqual(clean_altitude("1500"), "1500")
        self.assertEqual(clean_altitude("1500 masl"), "1500")
        self.assertEqual(clean_altitude("1500m"), "1500")
        self.assertEqual(clean_altitude(1500), "1500")
        self.assertEqual(clean_altitude(1500.0), "1500")

    def test_ranges_survive(self):
        self.assertEqual(clean_altitude("1500-1800"), "1500-1800")
        self.assertEqual(clean_altitude("1200 - 1800 masl"), "1200 - 1800")

    def test_strips_html(self):
        self.assertEqual(clean_altitude("<b>1500</b> masl"), "1500")

    def test_empty_values(self):
        self.assertEqual(clean_altitude(""), "")
        self.assertEqual(clean_altitude(None), "")

    def test_output_alphabet_and_length(self):
        for value in ("12\t00 -\n1800 ft", "9" * 80, "<i>abc</i>1-2", "x" * 10):
            result = clean_altitude(value)
            self.assertLessEqual(len(result), 50)
            self.assertTrue(all(c.isdigit() or c in "- " for c in result), result)


class ValidateProcessTests(unittest.TestCase):
    def test_known_processes(self):
        self.assertEqual(validate_process("washed"), "washed")
        self.assertEqual(validate_process("natural"), "natural")
        self.assertEqual(validate_process("honey"), "honey")
        self.assertEqual(validate_process("anaerobic natural"), "anaerobic natural")
        self.assertEqual(validate_process("unknown"), "unknown")

    def test_case_insensitive(self):
        self.assertEqual(validate_process("WASHED"), "washed")
        self.assertEqual(validate_process("HoNeY"), "honey")
        self.assertEqual(validate_process("UNKNOWN"), "unknown")

    def test_partial_matches(self):
        self.assertEqual(validate_process("honey process"), "honey")
        self.assertEqual(validate_process("washed method"), "washed")

    def test_html_is_ignored(self):
        self.assertEqual(validate_process("<b>WASHED</b>"), validate_process("washed"))
        self.assertEqual(validate_process("<script>natural</script>"), "natural")

    def test_defaults_to_unknown(self):
        for value in ("invalid", "some random text", "", None, 123):
            self.assertEqual(validate_process(value), "unknown")


class SanitizeCoffeeDataTests(unittest.TestCase):
    def test_empty_inputs(self):
        self.assertEqual(sanitize_coffee_data(None), {})
        self.assertEqual(sanitize_coffee_data({}), {})
        self.assertEqual(sanitize_coffee_data("coffee"), {})
        self.assertEqual(sanitize_coffee_data([{"name": "x"}]), {})

    def test_example_document(self):
        result = sanitize_coffee_data(
            {
                "name": "<script>x</script>Coffee",
                "altitude": "1500 masl",
                "process": "Honey Process",
            }
        )
        self.assertEqual(
            result, {"name": "xCoffee", "altitude": "1500", "process": "honey"}
        )

    def test_strips_all_text_fields(self):
        result = sanitize_coffee_data(
            {
                "name": "<script>Evil Coffee</script>",
                "origin": "<b>Ethiopia</b>",
                "cultivar": "<div>Heirloom</div>",
                "roaster": '<a href="evil.com">Roaster</a>',
                "roastery": "<i>Roastery</i>",
                "tastingNotes": "<p>Fruity and sweet</p>",
            }
        )
        self.assertEqual(result["name"], "Evil Coffee")
        self.assertEqual(result["origin"], "Ethiopia")
        self.assertEqual(result["cultivar"], "Heirloom")
        self.assertEqual(result["roaster"], "Roaster")
        self.assertEqual(result["roastery"], "Roastery")
        self.assertEqual(result["tastingNotes"], "Fruity and sweet")

    def test_truncates_text_fields(self):
        result = sanitize_coffee_data(
            {
                "name": "a" * 300,
                "origin": "b" * 300,
                "cultivar": "c" * 300,
                "roaster": "d" * 300,
                "tastingNotes": "e" * 600,
            }
        )
        self.assertEqual(len(result["name"]), 200)
        self.assertEqual(len(result["origin"]), 200)
        self.assertEqual(len(result["cultivar"]), 200)
        self.assertEqual(len(result["roaster"]), 200)
        self.assertEqual(len(result["tastingNotes"]), 500)

    def test_unknown_and_whitelisted_fields_pass_through(self):
        source = {
            "id": "abc",
            "addedDate": "2025-01-01T00:00:00.000Z",
            "savedAt": "2025-01-02T00:00:00.000Z",
            "grindOffset": 2,
            "isFavorite": True,
            "legacyField": {"nested": [1, 2]},
        }
        self.assertEqual(sanitize_coffee_data(source), source)

    def test_does_not_mutate_input(self):
        source = {"name": "<b>x</b>", "feedback": {"body": "HIGH"}}
        sanitize_coffee_data(source)
        self.assertEqual(source, {"name": "<b>x</b>", "feedback": {"body": "HIGH"}})

    def test_null_process_gets_default(self):
        self.assertEqual(sanitize_coffee_data({"process": None})["process"], "unknown")

    def test_feedback_is_restricted_but_keeps_unknown_keys(self):
        result = sanitize_coffee_data(
            {
                "feedback": {
                    "bitterness": "HIGH",
                    "sweetness": " balanced ",
                    "acidity": "low",
                    "body": "invalid",
                    "legacyKey": "keep-me",
                }
            }
        )
        self.assertEqual(
            result["feedback"],
            {
                "bitterness": "high",
                "sweetness": "balanced",
                "acidity": "low",
                "legacyKey": "keep-me",
            },
        )

    def test_feedback_that_is_not_a_mapping_is_untouched(self):
        self.assertEqual(normalize_feedback(["high"]), ["high"])
        self.assertEqual(sanitize_coffee_data({"feedback": "nice"})["feedback"], "nice")

    def test_feedback_history_is_capped_and_validated(self):
        entries = [
            {
                "timestamp": f"2025-01-{i + 1:02d}T00:00:00.000Z",
                "previousGrind": f"old-{i}",
                "newGrind": f"new-{i}",
                "previousTemp": "92",
                "newTemp": "93",
                "grindOffsetDelta": 0.5,
                "customTempApplied": i % 2 == 0,
                "resetToInitial": i % 3 == 0,
            }
            for i in range(30)
        ]
        entries += [
            {"timestamp": f"2025-02-{i + 1:02d}T00:00:00.000Z", "newGrind": f"new-{30 + i}"}
            for i in range(5)
        ]
        entries.append({"timestamp": "not-a-date", "previousGrind": "x"})

        history = sanitize_coffee_data({"feedbackHistory": entries})["feedbackHistory"]

        self.assertEqual(len(history), 29)
        self.assertEqual(history[0]["previousGrind"], "old-6")
        self.assertEqual(history[-1]["newGrind"], "new-34")

    def test_feedback_history_entry_fields(self):
        entries = [
            {
                "timestamp": "2025-03-01T10:00:00+02:00",
                "previousGrind": "g" * 150,
                "newTemp": "t" * 80,
                "grindOffsetDelta": float("inf"),
                "customTempApplied": "yes",
                "resetToInitial": False,
                "injected": "<script>",
            },
            "not an entry",
            {"timestamp": 12345},
            {"timestamp": "2025-03-02T00:00:00Z", "grindOffsetDelta": True},
        ]

        history = sanitize_coffee_data({"feedbackHistory": entries})["feedbackHistory"]

        self.assertEqual(len(history), 2)
        first, second = history
        self.assertEqual(first["timestamp"], "2025-03-01T08:00:00.000Z")
        self.assertEqual(len(first["previousGrind"]), 100)
        self.assertEqual(len(first["newTemp"]), 50)
        self.assertNotIn("grindOffsetDelta", first)
        self.assertNotIn("customTempApplied", first)
        self.assertIs(first["resetToInitial"], False)
        self.assertNotIn("injected", first)
        self.assertEqual(second, {"timestamp": "2025-03-02T00:00:00.000Z"})


class StableCoffeeUidTests(unittest.TestCase):
    def test_client_id_is_used_verbatim(self):
        self.assertEqual(stable_coffee_uid({"id": " abc-123 "}), "abc-123")
        self.assertEqual(stable_coffee_uid({"id": 1700000000000}), "1700000000000")

    def test_fingerprint_matches_compact_json_in_fixed_order(self):
        coffee = {
            "addedDate": "2025-01-01T00:00:00.000Z",
            "roaster": "Square Mile",
            "name": "Kamwangi",
            "origin": "Kenya",
            "process": "washed",
        }
        expected = hashlib.sha1(
            b'{"name":"Kamwangi","origin":"Kenya","roaster":"Square Mile",'
            b'"addedDate":"2025-01-01T00:00:00.000Z"}'
        ).hexdigest()
        self.assertEqual(stable_coffee_uid(coffee), expected)

    def test_fingerprint_ignores_other_fields(self):
        a = {"name": "A", "origin": "Kenya", "tastingNotes": "berry"}
        b = {"name": "A", "origin": "Kenya", "tastingNotes": "chocolate"}
        self.assertEqual(stable_coffee_uid(a), stable_coffee_uid(b))
        self.assertNotEqual(
            stable_coffee_uid(a), stable_coffee_uid({"name": "B", "origin": "Kenya"})
        )

    def test_fingerprint_numbers_match_browser_json(self):
        expected = hashlib.sha1(b'{"name":"A","addedDate":1700000000000}').hexdigest()
        self.assertEqual(
            stable_coffee_uid({"name": "A", "addedDate": 1700000000000.0}), expected
        )
        self.assertEqual(
            stable_coffee_uid({"name": "A", "addedDate": 1700000000000}), expected
        )
        self.assertEqual(
            stable_coffee_uid({"name": "A", "addedDate": float("nan")}),
            hashlib.sha1(b'{"name":"A","addedDate":null}').hexdigest(),
        )
        self.assertEqual(
            stable_coffee_uid({"name": "A", "origin": 1.5}),
            hashlib.sha1(b'{"name":"A","origin":1.5}').hexdigest(),
        )

    def test_blank_or_boolean_id_falls_back_to_fingerprint(self):
        fingerprint = stable_coffee_uid({"name": "A"})
        self.assertEqual(stable_coffee_uid({"id": "   ", "name": "A"}), fingerprint)
        self.assertEqual(stable_coffee_uid({"id": True, "name": "A"}), fingerprint)


if __name__ == "__main__":
    unittest.main()
