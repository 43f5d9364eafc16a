from __future__ import annotations

"""Two-stage report analysis and its streaming variant.

Stage 1 asks the backend for a corrected excerpt of a report field. Stage 2
turns that excerpt plus the raw field text into an executive summary with a
fixed heading structure. The prompt builders and finalizers here are pure so
they can be tested without a transport; the ``run_*`` helpers and entry points
are the only code that talks to a :class:`ProviderClient`.

``analyze_text`` never raises for backend failures and answers with
:data:`FALLBACK_MESSAGE` instead. ``analyze_text_stream`` lets errors propagate
so the caller can mark the field as failed.
"""

import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..domain.errors import AnalysisValidationError
from ..domain.field_types import field_label, layout_requirements
from ..providers.base import AIResponse, Message, ProviderClient
from .change_detector import ChangeContext, detect_changes

logger = logging.getLogger("report_ai.pipeline")

FALLBACK_MESSAGE = "Sorry, the AI analysis service is unavailable right now. Please try again later."
MIN_SUMMARIZE_CHARS = 10
DEFAULT_SUGGESTION_LIMIT = 700

CORRECTION_SYSTEM_PROMPT = """You are an assistant to the project manager of an insurance systems development project.
Review the weekly report content and provide a corrected example that brings it to the expected level of detail.

When there is something important to point out, answer within {limit} characters in this form:
**Corrected example**: [a concrete rewrite of the problematic part of the original text, ready to copy and paste]

Notes:
- Answer with the corrected example only. No feedback or advice.
- Extract the parts that need improvement and rewrite them using concrete numbers and wording.
- The example must be immediately applicable and improve the quality of the report.
"""

CORRECTION_USER_TEMPLATE = """Field: {field_name} ({field_label})

Content:
{content}{change_context}{layout}{unchanged_notice}"""

SUMMARY_SYSTEM_PROMPT = """You are a systems engineer and project manager who turns weekly reports into executive summaries for management.

Example output format:
# Weekly Report Executive Summary

## Project Status Overview
- Highlights of the basic information

## Key Progress and Outcomes
- Main outcomes this week
- Progress rate and status

## Issues and Risk Analysis
- Major issues
- Risk level and countermeasures

## Action Plan
- Key items for next week
- Support requests

## FAQ
**Q1: How healthy is the project overall?**
A1: [answer based on the analysis]

**Q2: What is the most important issue?**
A2: [answer based on the analysis]

**Q3: Can the schedule be met?**
A3: [answer based on the analysis]

**Q4: Are additional resources needed?**
A4: [answer based on the analysis]

**Q5: What is the impact on the next milestone?**
A5: [answer based on the analysis]"""

SUMMARY_USER_TEMPLATE = """Create an executive summary condensed to a single page from the weekly report analysis below.

Requirements:
- No redundant phrasing; use a varied vocabulary
- Markdown with clear section headings
- Bullet lists throughout
- A five-question FAQ at the end

Field analysed: {field_name}

Stage 1 analysis:
{suggestion}

Original weekly report text:
{content}

Write a strategic executive summary for executives and managers from the information above."""

FOLLOW_UP_SYSTEM_PROMPT = """You are an assistant helping a project manager improve one field of a weekly report.
Answer the user's follow-up question about the analysis below. Be concise and concrete.

Field: {field_name} ({field_label})

Field content:
{content}

Analysis:
{analysis}"""

SUMMARIZE_SYSTEM_PROMPT = "Summarize the following text concisely, keeping every figure, date and decision."

SUMMARY_HEADINGS = (
    "## Project Status Overview",
    "## Key Progress and Outcomes",
    "## Issues and Risk Analysis",
    "## Action Plan",
    "## FAQ",
    "Q1:",
    "Q2:",
    "Q3:",
    "Q4:",
    "Q5:",
)


def suggestion_limit() -> int:
    try:
        return int(os.getenv("REPORT_AI_SUGGESTION_LIMIT", str(DEFAULT_SUGGESTION_LIMIT)))
    except ValueError:
        return DEFAULT_SUGGESTION_LIMIT


# ----------------------------------------------------------------------
# Pure builders / finalizers
# ----------------------------------------------------------------------
def build_correction_messages(
    field_name: str,
    content: str,
    change: Optional[ChangeContext] = None,
    limit: Optional[int] = None,
) -> List[Message]:
    change = change or detect_changes(content)
    layout = layout_requirements(field_name)
    user = CORRECTION_USER_TEMPLATE.format(
        field_name=field_name,
        field_label=field_label(field_name),
        content=content,
        change_context=change.context_block,
        layout=f"\n\nLayout requirements:\n{layout}" if layout else "",
        unchanged_notice=change.unchanged_notice,
    )
    return [
        {"role": "system", "content": CORRECTION_SYSTEM_PROMPT.format(limit=limit or suggestion_limit())},
        {"role": "user", "content": user},
    ]


def finalize_suggestion(client: ProviderClient, text: str, limit: Optional[int] = None) -> str:
    """Clean a stage 1 answer and bound it to the suggestion limit."""
    cleaned = client.clean_response(text)
    limit = limit or suggestion_limit()
    if len(cleaned) > limit:
        cleaned = cleaned[:limit].rstrip()
    return cleaned


def build_summary_messages(field_name: str, suggestion: str, content: str) -> List[Message]:
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": SUMMARY_USER_TEMPLATE.format(field_name=field_name, suggestion=suggestion, content=content),
        },
    ]


def summary_sections_missing(summary: str) -> List[str]:
    return [h for h in SUMMARY_HEADINGS if h not in summary]


def build_follow_up_messages(
    field_name: str,
    content: str,
    analysis: str,
    history: Sequence[Dict[str, str]],
    message: str,
) -> List[Message]:
    msgs: List[Message] = [
        {
            "role": "system",
            "content": FOLLOW_UP_SYSTEM_PROMPT.format(
                field_name=field_name,
                field_label=field_label(field_name),
                content=content,
                analysis=analysis,
            ),
        }
    ]
    for turn in history:
        msgs.append({"role": turn["role"], "content": turn["content"]})
    msgs.append({"role": "user", "content": message})
    return msgs


# ----------------------------------------------------------------------
# Stages
# ----------------------------------------------------------------------
async def run_correction_stage(
    client: ProviderClient,
    field_name: str,
    content: str,
    original_content: Optional[str] = None,
    previous_report_content: Optional[str] = None,
    caller_id: Optional[str] = None,
) -> str:
    change = detect_changes(content, original_content, previous_report_content)
    messages = build_correction_messages(field_name, content, change)
    response = await client.generate_response(
        messages,
        caller_id,
        {"operation": "analyzeText-stage1", "field_name": field_name, "content_unchanged": change.content_unchanged_since_previous_report},
    )
    suggestion = finalize_suggestion(client, response.content)
    logger.debug(
        "analysis_stage1_completed",
        extra={"field_name": field_name, "provider": client.provider_id, "suggestion": suggestion},
    )
    return suggestion


async def run_summary_stage(
    client: ProviderClient,
    field_name: str,
    suggestion: str,
    content: str,
    caller_id: Optional[str] = None,
) -> str:
    response = await client.generate_response(
        build_summary_messages(field_name, suggestion, content),
        caller_id,
        {"operation": "analyzeText-stage2", "field_name": field_name},
    )
    summary = client.clean_response(response.content)
    missing = summary_sections_missing(summary)
    if missing:
        logger.warning(
            "executive_summary_incomplete",
            extra={"field_name": field_name, "provider": client.provider_id, "missing": missing},
        )
    return summary


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------
async def analyze_text(
    client: ProviderClient,
    field_name: str,
    content: str,
    original_content: Optional[str] = None,
    previous_report_content: Optional[str] = None,
    caller_id: Optional[str] = None,
) -> str:
    try:
        suggestion = await run_correction_stage(
            client, field_name, content, original_content, previous_report_content, caller_id
        )
        return await run_summary_stage(client, field_name, suggestion, content, caller_id)
    except Exception as exc:
        logger.warning(
            "analysis_fallback",
            extra={"field_name": field_name, "provider": client.provider_id, "error": str(exc)},
        )
        return FALLBACK_MESSAGE


async def analyze_text_stream(
    client: ProviderClient,
    field_name: str,
    content: str,
    original_content: Optional[str] = None,
    previous_report_content: Optional[str] = None,
    streaming_enabled: bool = True,
    caller_id: Optional[str] = None,
) -> AsyncIterator[str]:
    change = detect_changes(content, original_content, previous_report_content)
    messages = build_correction_messages(field_name, content, change)
    metadata: Dict[str, Any] = {"operation": "analyzeTextStream", "field_name": field_name}
    if client.supports_streaming and streaming_enabled:
        async for fragment in client.generate_stream_response(messages, caller_id, metadata):
            yield fragment
        return
    response = await client.generate_response(messages, caller_id, metadata)
    yield client.clean_response(response.content)


async def follow_up(
    client: ProviderClient,
    field_name: str,
    content: str,
    analysis: str,
    history: Sequence[Dict[str, str]],
    message: str,
    caller_id: Optional[str] = None,
) -> str:
    messages = build_follow_up_messages(field_name, content, analysis, history, message)
    response = await client.generate_response(
        messages, caller_id, {"operation": "conversation", "field_name": field_name, "turns": len(history)}
    )
    return client.clean_response(response.content)


async def chat(client: ProviderClient, messages: List[Message], caller_id: Optional[str] = None) -> AIResponse:
    if not messages:
        raise AnalysisValidationError("messages must not be empty")
    return await client.generate_response(messages, caller_id, {"operation": "chat"})


async def summarize(client: ProviderClient, text: str, caller_id: Optional[str] = None) -> AIResponse:
    if len((text or "").strip()) < MIN_SUMMARIZE_CHARS:
        raise AnalysisValidationError(f"text must be at least {MIN_SUMMARIZE_CHARS} characters")
    return await client.generate_response(
        [{"role": "system", "content": SUMMARIZE_SYSTEM_PROMPT}, {"role": "user", "content": text}],
        caller_id,
        {"operation": "summarize", "text_length": len(text)},
    )
