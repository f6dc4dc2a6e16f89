"""Screening prompts.

Two reviewers get the same reference, criteria and output contract, but a
different stance instruction:

- ``conservative`` defaults to exclude when in doubt.
- ``comprehensive`` defaults to include unless the study is clearly irrelevant.

The key differences are in:

1. How they interpret missing information
2. What constitutes sufficient evidence
3. Confidence scoring interpretation

The asymmetry is what makes a disagreement between the two reviewers a meaningful
signal for human review.

The JSON schema of :class:`~sr_screening.core.schemas.ScreeningResponse` is embedded
in the prompt verbatim and passed to the template as a variable, so its braces never
collide with template placeholders.
"""

from __future__ import annotations

import functools
import json
import typing as t

from langchain_core.prompts import PromptTemplate
from loguru import logger

from sr_screening.core.schemas import Criteria, Reference, ScreeningResponse
from sr_screening.core.types import ScreeningStrategyType

NOT_SPECIFIED: t.Final = "Not specified"

SCREENING_SYSTEM_PROMPT = """\
You are an expert systematic review researcher screening titles and abstracts \
against a PICO(TT) protocol. You respond only with a single JSON object that \
conforms to the schema given in the task. Do not wrap the JSON in any other text."""


conservative_reviewer_prompt_text = """\
You are AI Reviewer 1, a highly conservative systematic reviewer, focusing on \
methodological rigor and strict interpretation of inclusion criteria. Your priority \
is to avoid including studies that might not fully meet the criteria.

When assessing abstracts:
- Require explicit statements matching criteria
- Flag any methodological ambiguity
- Consider unclear reporting as a reason to exclude
- Demand high specificity in study characteristics
- When in doubt, EXCLUDE

Confidence Scoring for Conservative Review:
- Score < 0.7: Required information is implicit or missing
- Score 0.7-0.85: Clear criteria match but some details could be more explicit
- Score > 0.85: Only when all criteria are explicitly and unambiguously met"""

comprehensive_reviewer_prompt_text = """\
You are AI Reviewer 2, a comprehensive systematic reviewer, focusing on potential \
relevance and broader interpretation of inclusion criteria. Your priority is to avoid \
excluding potentially relevant studies.

When assessing abstracts:
- Consider both explicit and implicit indicators
- Look for contextual clues about methodology
- Interpret typical field conventions
- Allow for variance in reporting styles
- INCLUDE unless the study is clearly irrelevant

Confidence Scoring for Comprehensive Review:
- Score < 0.7: Critical information is completely absent
- Score 0.7-0.85: Can infer required information from context
- Score > 0.85: Clear match with criteria, either explicit or strongly implied"""

STANCE_PROMPTS: t.Final[dict[ScreeningStrategyType, str]] = {
    ScreeningStrategyType.CONSERVATIVE: conservative_reviewer_prompt_text,
    ScreeningStrategyType.COMPREHENSIVE: comprehensive_reviewer_prompt_text,
}


task_prompt_text = """\
Analyze this research reference against the provided screening criteria.

# Reference

Title: {title}
Abstract: {abstract}
Authors: {authors}
Journal: {journal}
Year: {year}
DOI: {doi}
PMID: {pmid}

# Screening criteria (PICOTT)

Population: {population}
Intervention: {intervention}
Comparator: {comparator}
Outcome: {outcome}
Timeframe: {timeframe}
Study Designs: {study_designs}

## Inclusion Criteria:
{inclusion_criteria}

## Exclusion Criteria:
{exclusion_criteria}

# Decision

Your recommendation MUST be either "include" or "exclude". There is no third \
option, "maybe" or "uncertain" are not allowed.

# Required output, in this order

1. picott_assessment: for each of population, intervention, comparator, outcome, \
timeframe and study_design, quote the relevant text from the abstract as evidence \
and assess it as present, absent or unclear.
2. criteria_assessment: for each inclusion criterion state met, not_met or unclear, \
and for each exclusion criterion state violated, not_violated or unclear, with \
evidence.
3. reasoning: a paragraph synthesizing the above into your final decision.
Then give recommendation and confidence (0.0 to 1.0).

Respond with JSON that strictly conforms to this JSON schema:
```json
{response_schema}
```

# Reviewer instructions

{stance_instructions}"""

screening_prompt = PromptTemplate.from_template(task_prompt_text)


@functools.cache
def screening_response_schema() -> str:
    """JSON schema of the response contract, as embedded in prompts."""
    return json.dumps(ScreeningResponse.model_json_schema(), indent=2)


def _or_not_specified(value: t.Any) -> str:
    if value is None:
        return NOT_SPECIFIED
    text = str(value).strip()
    return text or NOT_SPECIFIED


def _format_list(items: list[str], *, bullet: bool = False) -> str:
    kept = [i.strip() for i in items if i and i.strip()]
    if not kept:
        return NOT_SPECIFIED
    if bullet:
        return "\n".join(f"- {i}" for i in kept)
    return ", ".join(kept)


def format_timeframe(criteria: Criteria) -> str:
    """Timeframe line: study period, follow-up details, both or "Not specified"."""
    parts: list[str] = []
    start = (criteria.timeframe_start or "").strip()
    end = (criteria.timeframe_end or "").strip()
    description = (criteria.timeframe_description or "").strip()
    if start and end:
        parts.append(f"Study Period: {start} to {end}")
    elif start or end:
        parts.append(f"Study Period: {start or NOT_SPECIFIED} to {end or 'Present'}")
    if description:
        parts.append(f"Follow-up Details: {description}")
    return "; ".join(parts) or NOT_SPECIFIED


def build_screening_prompt(
    reference: Reference,
    criteria: Criteria,
    stance: ScreeningStrategyType,
) -> str:
    """Render the task prompt for one reviewer stance.

    Args:
        reference: Reference under review.
        criteria: Criteria snapshot of the run.
        stance: Reviewer stance selecting the bias instructions.

    Returns:
        The prompt string, sent as the human message under
        :data:`SCREENING_SYSTEM_PROMPT`.
    """
    prompt = screening_prompt.format(
        title=_or_not_specified(reference.title),
        abstract=_or_not_specified(reference.abstract),
        authors=_or_not_specified(reference.authors),
        journal=_or_not_specified(reference.journal),
        year=_or_not_specified(reference.year),
        doi=_or_not_specified(reference.doi),
        pmid=_or_not_specified(reference.pmid),
        population=_or_not_specified(criteria.population),
        intervention=_or_not_specified(criteria.intervention),
        comparator=_or_not_specified(criteria.comparator),
        outcome=_or_not_specified(criteria.outcome),
        timeframe=format_timeframe(criteria),
        study_designs=_format_list(criteria.study_designs),
        inclusion_criteria=_format_list(criteria.inclusion_criteria, bullet=True),
        exclusion_criteria=_format_list(criteria.exclusion_criteria, bullet=True),
        response_schema=screening_response_schema(),
        stance_instructions=STANCE_PROMPTS[stance],
    )
    logger.trace(f"Built {stance} prompt for reference {reference.id}")
    return prompt
