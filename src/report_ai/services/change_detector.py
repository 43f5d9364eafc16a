"""Context block describing how a field changed.

Pure functions of ``(current, original, previous_report)``: the same inputs
always produce the same block and flag.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

_WHITESPACE_RE = re.compile(r"\s+")

ORIGINAL_DIFF_HEADER = "[Changes from the original content]"
PREVIOUS_REPORT_HEADER = "[Comparison with the previous report]"
STAGNATION_WARNING = (
    "WARNING: The content is identical to the previous report. Stagnant content "
    "usually signals stalled progress; restate the current situation even if "
    "nothing moved."
)
UNCHANGED_NOTICE = (
    "NOTE: The content has not changed since the previous report. Keep the layout "
    "but update it to reflect the latest situation."
)


@dataclass(frozen=True)
class ChangeContext:
    context_block: str
    content_unchanged_since_previous_report: bool

    @property
    def unchanged_notice(self) -> str:
        return f"\n\n{UNCHANGED_NOTICE}" if self.content_unchanged_since_previous_report else ""


def normalize_whitespace(text: Optional[str]) -> str:
    return _WHITESPACE_RE.sub(" ", (text or "").strip())


def original_diff_block(current: str, original: Optional[str]) -> str:
    if not original or original == current:
        return ""
    return f"\n\n{ORIGINAL_DIFF_HEADER}\nOriginal content:\n{original}\n\nCurrent content:\n{current}"


def detect_changes(
    current: str,
    original: Optional[str] = None,
    previous_report: Optional[str] = None,
) -> ChangeContext:
    block = original_diff_block(current, original)
    unchanged = False
    if previous_report and previous_report.strip():
        comparison = f"\n\n{PREVIOUS_REPORT_HEADER}\nPrevious report content:\n{previous_report}"
        if normalize_whitespace(previous_report) == normalize_whitespace(current):
            unchanged = True
            comparison += f"\n\n{STAGNATION_WARNING}"
        block += comparison
    return ChangeContext(context_block=block, content_unchanged_since_previous_report=unchanged)
