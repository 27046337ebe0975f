"""Tests for autocycle.commands — extraction, validation and application."""

from __future__ import annotations

import pytest

from autocycle.commands import (
    MarkerExtractor,
    MutationCommand,
    apply_commands,
    validate_command,
)
from autocycle.knowledge import KnowledgeBase

from conftest import FIXED_NOW, memory_block


# ---------------------------------------------------------------------------
# validate_command
# ---------------------------------------------------------------------------


class TestValidateCommand:
    def test_valid_observation(self) -> None:
        cmd = validate_command({"command": "add_observation", "reason": "r", "data": {"content": "c"}})
        assert cmd == MutationCommand(command="add_observation", reason="r", data={"content": "c"})

    def test_missing_reason_is_tolerated(self) -> None:
        cmd = validate_command({"command": "add_observation", "data": {"content": "c"}})
        assert cmd.reason == ""

    @pytest.mark.parametrize(
        "raw",
        [
            "add_observation",
            ["add_observation"],
            {"command": "delete_everything", "data": {}},
            {"command": "add_observation", "data": "content"},
            {"command": "add_observation", "data": {}},
            {"command": "add_observation", "data": {"content": 42}},
            {"command": "add_observation", "data": {"content": "   "}},
            {"command": "add_strategy", "data": {"name": "n"}},
        ],
    )
    def test_invalid_entries_raise(self, raw) -> None:
        with pytest.raises(ValueError):
            validate_command(raw)

    def test_prune_old_needs_no_data(self) -> None:
        assert validate_command({"command": "prune_old"}).command == "prune_old"


# ---------------------------------------------------------------------------
# MarkerExtractor
# ---------------------------------------------------------------------------


class TestMarkerExtractor:
    def test_no_block(self) -> None:
        result = MarkerExtractor().extract("Just some prose, nothing to remember.")
        assert result.commands == []
        assert result.block_found is False

    def test_single_block(self) -> None:
        text = memory_block(
            '{"command": "add_observation", "reason": "r", "data": {"content": "one"}}',
            '{"command": "add_lesson", "reason": "r", "data": {"content": "two", "confidence": "high"}}',
        )
        result = MarkerExtractor().extract(text)
        assert [c.command for c in result.commands] == ["add_observation", "add_lesson"]
        assert result.skipped == []

    def test_fenced_block(self) -> None:
        text = (
            "Done.\n\nMEMORY_COMMANDS:\n```json\n"
            '[{"command": "add_observation", "reason": "r", "data": {"content": "fenced"}}]\n'
            "```\n"
        )
        result = MarkerExtractor().extract(text)
        assert result.commands[0].data["content"] == "fenced"

    def test_decorated_marker_line(self) -> None:
        text = '**MEMORY_COMMANDS:** [{"command": "prune_old", "reason": "tidy"}]'
        assert [c.command for c in MarkerExtractor().extract(text).commands] == ["prune_old"]

    def test_trailing_prose_after_array(self) -> None:
        text = (
            'MEMORY_COMMANDS:\n[{"command": "add_observation", "data": {"content": "x"}}]\n\n'
            "That is all for this cycle."
        )
        assert len(MarkerExtractor().extract(text).commands) == 1

    def test_two_blocks_yield_nothing(self) -> None:
        block = memory_block('{"command": "add_observation", "data": {"content": "x"}}')
        result = MarkerExtractor().extract(block + "\n" + block)
        assert result.commands == []

    def test_unparsable_json(self) -> None:
        result = MarkerExtractor().extract("MEMORY_COMMANDS:\n[{not json}]")
        assert result.block_found is True
        assert result.commands == []

    def test_object_instead_of_array(self) -> None:
        result = MarkerExtractor().extract('MEMORY_COMMANDS:\n{"command": "add_observation"}')
        assert result.block_found is True
        assert result.commands == []

    def test_bad_entries_are_skipped_individually(self) -> None:
        text = memory_block(
            '{"command": "add_observation", "data": {"content": 12345}}',
            '{"command": "add_observation", "data": {"content": "kept"}}',
            '{"command": "teleport", "data": {}}',
        )
        result = MarkerExtractor().extract(text)
        assert [c.data["content"] for c in result.commands] == ["kept"]
        assert len(result.skipped) == 2

    def test_marker_mid_line_is_ignored(self) -> None:
        text = 'I will not write MEMORY_COMMANDS: [] this time.'
        assert MarkerExtractor().extract(text).block_found is False

    def test_custom_marker(self) -> None:
        text = 'NOTES:\n[{"command": "add_observation", "data": {"content": "x"}}]'
        assert len(MarkerExtractor(marker="NOTES:").extract(text).commands) == 1


# ---------------------------------------------------------------------------
# apply_commands
# ---------------------------------------------------------------------------


class TestApplyCommands:
    def test_add_lesson_at_cycle(self) -> None:
        kb = KnowledgeBase.empty(FIXED_NOW)
        cmd = validate_command({"command": "add_lesson", "reason": "r", "data": {"content": "X", "confidence": "high"}})

        report = apply_commands(kb, [cmd], cycle=3, now=FIXED_NOW)

        assert len(report.applied) == 1
        assert len(kb.lessons) == 1
        lesson = kb.lessons[0]
        assert (lesson.content, lesson.confidence, lesson.cycle) == ("X", "high", 3)
        assert lesson.timestamp == FIXED_NOW

    def test_each_kind(self) -> None:
        kb = KnowledgeBase.empty(FIXED_NOW)
        cmds = [
            validate_command({"command": "add_observation", "data": {"content": "o"}}),
            validate_command({"command": "add_hypothesis", "data": {"content": "h"}}),
            validate_command({"command": "add_strategy", "data": {"name": "n", "description": "d"}}),
        ]
        apply_commands(kb, cmds, cycle=1, now=FIXED_NOW)

        assert kb.observations[0].content == "o"
        assert kb.hypotheses[0].status == "testing"
        assert kb.hypotheses[0].evidence == []
        assert (kb.strategies[0].name, kb.strategies[0].description) == ("n", "d")

    @pytest.mark.parametrize(
        "confidence,expected",
        [("HIGH", "high"), (" medium ", "medium"), ("certain", ""), (5, ""), (None, "")],
    )
    def test_confidence_normalised(self, confidence, expected) -> None:
        kb = KnowledgeBase.empty(FIXED_NOW)
        cmd = MutationCommand(command="add_lesson", data={"content": "x", "confidence": confidence})
        apply_commands(kb, [cmd], cycle=1, now=FIXED_NOW)
        assert kb.lessons[0].confidence == expected

    def test_prune_old_changes_nothing(self) -> None:
        kb = KnowledgeBase.empty(FIXED_NOW)
        apply_commands(kb, [validate_command({"command": "add_observation", "data": {"content": "a"}})], 1)
        before = kb.model_dump()

        report = apply_commands(kb, [MutationCommand(command="prune_old")], cycle=2)

        assert len(report.applied) == 1
        assert kb.model_dump() == before

    def test_hand_built_invalid_command_is_skipped(self) -> None:
        kb = KnowledgeBase.empty(FIXED_NOW)
        bad = MutationCommand(command="add_observation", data={"content": 7})
        good = MutationCommand(command="add_observation", data={"content": "fine"})

        report = apply_commands(kb, [bad, good], cycle=1, now=FIXED_NOW)

        assert [c.data["content"] for c in report.applied] == ["fine"]
        assert len(report.skipped) == 1
        assert [o.content for o in kb.observations] == ["fine"]
