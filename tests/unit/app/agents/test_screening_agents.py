"""Unit tests for the screening prompt builder."""

import json

import pytest

from sr_screening.app.agents.screening_agents import (
    NOT_SPECIFIED,
    build_screening_prompt,
    format_timeframe,
    screening_response_schema,
)
from sr_screening.core.schemas import Criteria, Reference
from sr_screening.core.types import ScreeningStrategyType


class TestFormatTimeframe:
    """Tests for format_timeframe()."""

    def test_full_period(self) -> None:
        """Test start and end bounds."""
        criteria = Criteria(timeframe_start="2000", timeframe_end="2024")
        assert format_timeframe(criteria) == "Study Period: 2000 to 2024"

    def test_open_ended_period(self) -> None:
        """Test a missing end bound reads as Present."""
        criteria = Criteria(timeframe_start="2010")
        assert format_timeframe(criteria) == "Study Period: 2010 to Present"

    def test_missing_start(self) -> None:
        """Test a missing start bound reads as Not specified."""
        criteria = Criteria(timeframe_end="2015")
        assert format_timeframe(criteria) == "Study Period: Not specified to 2015"

    def test_period_and_follow_up(self) -> None:
        """Test both parts are joined."""
        criteria = Criteria(
            timeframe_start="2000",
            timeframe_end="2024",
            timeframe_description="At least 12 weeks follow-up",
        )
        assert format_timeframe(criteria) == (
            "Study Period: 2000 to 2024; Follow-up Details: At least 12 weeks follow-up"
        )

    def test_follow_up_only(self) -> None:
        criteria = Criteria(timeframe_description="6 months")
        assert format_timeframe(criteria) == "Follow-up Details: 6 months"

    def test_nothing_given(self) -> None:
        assert format_timeframe(Criteria(timeframe_start="  ")) == NOT_SPECIFIED


class TestBuildScreeningPrompt:
    """Tests for build_screening_prompt()."""

    def test_reference_and_criteria_rendered(self, reference, criteria) -> None:
        """Test all reference fields and criteria reach the prompt."""
        prompt = build_screening_prompt(
            reference, criteria, ScreeningStrategyType.CONSERVATIVE
        )

        assert f"Title: {reference.title}" in prompt
        assert "Authors: Smith J, Doe A" in prompt
        assert "Journal: Spine" in prompt
        assert "Year: 2021" in prompt
        assert "DOI: 10.1000/spine.2021.1" in prompt
        assert "PMID: Not specified" in prompt
        assert "Population: Adults with chronic low back pain" in prompt
        assert "Timeframe: Study Period: 2000 to 2024" in prompt
        assert "Study Designs: RCT, Cluster RCT" in prompt
        assert "- Adults aged 18+\n- Randomized design" in prompt
        assert "- Animal studies" in prompt

    def test_missing_values_marked_not_specified(self) -> None:
        """Test empty reference and criteria fields never render blank."""
        prompt = build_screening_prompt(
            Reference(id="r1", title="Only a title"),
            Criteria(inclusion_criteria=["", "  "]),
            ScreeningStrategyType.COMPREHENSIVE,
        )

        assert "Abstract: Not specified" in prompt
        assert "Journal: Not specified" in prompt
        assert "Comparator: Not specified" in prompt
        assert "Timeframe: Not specified" in prompt
        assert "## Inclusion Criteria:\nNot specified" in prompt
        assert "## Exclusion Criteria:\nNot specified" in prompt

    @pytest.mark.parametrize(
        ("stance", "expected", "unexpected"),
        [
            (
                ScreeningStrategyType.CONSERVATIVE,
                "When in doubt, EXCLUDE",
                "INCLUDE unless the study is clearly irrelevant",
            ),
            (
                ScreeningStrategyType.COMPREHENSIVE,
                "INCLUDE unless the study is clearly irrelevant",
                "When in doubt, EXCLUDE",
            ),
        ],
    )
    def test_stance_instructions(
        self, reference, criteria, stance, expected, unexpected
    ) -> None:
        """Test each stance gets only its own bias instruction."""
        prompt = build_screening_prompt(reference, criteria, stance)
        assert expected in prompt
        assert unexpected not in prompt

    def test_stances_share_everything_else(self, reference, criteria) -> None:
        conservative = build_screening_prompt(
            reference, criteria, ScreeningStrategyType.CONSERVATIVE
        )
        comprehensive = build_screening_prompt(
            reference, criteria, ScreeningStrategyType.COMPREHENSIVE
        )
        marker = "# Reviewer instructions"
        assert conservative.split(marker)[0] == comprehensive.split(marker)[0]

    def test_output_contract(self, reference, criteria) -> None:
        """Test the binary decision rule and the embedded JSON schema."""
        prompt = build_screening_prompt(
            reference, criteria, ScreeningStrategyType.CONSERVATIVE
        )

        assert 'MUST be either "include" or "exclude"' in prompt
        assert screening_response_schema() in prompt
        schema_block = prompt.split("```json\n")[1].split("\n```")[0]
        schema = json.loads(schema_block)
        assert {"recommendation", "confidence", "reasoning"} <= set(schema["required"])

    def test_braces_in_reference_text_are_kept(self, criteria) -> None:
        """Test literal braces in user text do not break templating."""
        reference = Reference(id="r1", title="Effect of {drug} on outcomes")
        prompt = build_screening_prompt(
            reference, criteria, ScreeningStrategyType.CONSERVATIVE
        )
        assert "Title: Effect of {drug} on outcomes" in prompt
