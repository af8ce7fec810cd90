"""
Tests for command block extraction.

Model output is imperfect, so the parser must never raise and must never let
a fenced region leak into the display text.
"""

import pytest
from duckbake.blocks import display_text, extract


def block(body: str) -> str:
    return f"```duckbake\n{body}\n```"


class TestExtraction:
    """Well-formed blocks are parsed in order of appearance."""

    def test_single_block(self):
        text = "Here's the breakdown:\n\n" + block(
            '{"sql": "SELECT region, SUM(amount) AS total FROM orders GROUP BY region",'
            ' "viz": "bar", "xKey": "region", "yKey": "total"}'
        )

        result = extract(text)

        assert len(result.blocks) == 1
        parsed = result.blocks[0]
        assert parsed.sql.startswith("SELECT region")
        assert parsed.viz == "bar"
        assert parsed.x_key == "region"
        assert parsed.y_key == "total"
        assert result.clean_text == "Here's the breakdown:"

    @pytest.mark.parametrize(
        "text, sql, clean_text",
        [
            ('Here:\n```duckbake\n{"sql":"SELECT 1"}\n```\nDone', "SELECT 1", "Here:\n\nDone"),
            ('```duckbake\n{"sql":"SELECT 2"}\n```', "SELECT 2", ""),
        ],
    )
    def test_block_between_prose(self, text, sql, clean_text):
        result = extract(text)

        assert [(b.sql, b.viz, b.x_key, b.y_key) for b in result.blocks] == [
            (sql, "table", None, None)
        ]
        assert result.clean_text == clean_text

    def test_multiple_blocks_keep_order(self):
        text = "\n".join(
            [
                "First:",
                block('{"sql": "SELECT 1"}'),
                "Second:",
                block('{"sql": "SELECT 2", "viz": "line"}'),
            ]
        )

        result = extract(text)

        assert [b.sql for b in result.blocks] == ["SELECT 1", "SELECT 2"]
        assert [b.viz for b in result.blocks] == ["table", "line"]
        assert "```" not in result.clean_text
        assert "First:" in result.clean_text and "Second:" in result.clean_text

    def test_tag_is_case_insensitive(self):
        result = extract('```DuckBake\n{"sql": "SELECT 1"}\n```')
        assert [b.sql for b in result.blocks] == ["SELECT 1"]

    def test_other_fences_are_left_alone(self):
        text = "Example:\n```sql\nSELECT 1\n```"
        result = extract(text)

        assert result.blocks == []
        assert result.clean_text == text

    def test_text_without_blocks(self):
        result = extract("Just prose.")
        assert result.blocks == []
        assert result.clean_text == "Just prose."

    def test_empty_input(self):
        result = extract("")
        assert result.blocks == []
        assert result.clean_text == ""


class TestLeniency:
    """Malformed blocks are dropped from execution and from display."""

    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            '{"sql": "SELECT 1"',
            '["SELECT 1"]',
            '{"viz": "bar"}',
            '{"sql": ""}',
            '{"sql": 42}',
        ],
    )
    def test_malformed_block_is_dropped(self, body):
        result = extract("Before\n" + block(body) + "\nAfter")

        assert result.blocks == []
        assert "```" not in result.clean_text
        assert result.clean_text == "Before\n\nAfter"

    def test_malformed_block_does_not_affect_neighbours(self):
        text = block("oops") + "\n" + block('{"sql": "SELECT 2"}')
        assert [b.sql for b in extract(text).blocks] == ["SELECT 2"]

    def test_unknown_viz_falls_back_to_table(self):
        result = extract(block('{"sql": "SELECT 1", "viz": "scatter"}'))
        assert result.blocks[0].viz == "table"

    def test_viz_is_case_insensitive(self):
        result = extract(block('{"sql": "SELECT 1", "viz": "PIE"}'))
        assert result.blocks[0].viz == "pie"

    def test_non_string_keys_are_ignored(self):
        result = extract(block('{"sql": "SELECT 1", "xKey": 3, "yKey": null}'))
        assert result.blocks[0].x_key is None
        assert result.blocks[0].y_key is None

    def test_unterminated_block_is_hidden_but_not_parsed(self):
        text = 'Working on it:\n```duckbake\n{"sql": "SELECT 1"}'

        result = extract(text)

        assert result.blocks == []
        assert result.clean_text == "Working on it:"


class TestDisplayText:
    def test_display_text_is_idempotent(self):
        text = "A\n" + block('{"sql": "SELECT 1"}') + "\n\n\n\nB"

        once = display_text(text)

        assert once == "A\n\nB"
        assert display_text(once) == once

    def test_clean_text_never_contains_a_block(self):
        # Removing the inner region joins the outer fragments into a new fence.
        text = "```duck" + block('{"sql": "SELECT 1"}') + 'bake\n{"sql": "SELECT 2"}\n```'

        clean = display_text(text)

        assert extract(clean).blocks == []
        assert display_text(clean) == clean

    def test_excess_newlines_are_collapsed(self):
        assert display_text("a\n\n\n\n\nb") == "a\n\nb"
