from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ReportField:
    key: str
    label: str
    layout_requirements: str = ""


_BULLETS = "Use one bullet per item and keep each bullet to a single sentence."

REPORT_FIELDS: Dict[str, ReportField] = {
    f.key: f
    for f in [
        ReportField(
            "weeklyTasks",
            "Tasks completed this week",
            "List each task with its planned vs. actual progress (%) and the deliverable produced. " + _BULLETS,
        ),
        ReportField(
            "delayDetails",
            "Delay and problem details",
            "For every delay state the affected task, days behind schedule, root cause and recovery date.",
        ),
        ReportField(
            "issues",
            "Issues",
            "Describe each issue as: symptom, impact, owner, due date for resolution.",
        ),
        ReportField(
            "riskAnalysis",
            "New risks (overall analysis)",
            "Give each risk a likelihood (high/medium/low), an impact and the trigger to watch for.",
        ),
        ReportField(
            "riskCountermeasures",
            "Risk countermeasures",
            "Pair every countermeasure with the risk it addresses, the owner and the start date.",
        ),
        ReportField(
            "qualityAnalysis",
            "Quality (overall analysis)",
            "Quote defect counts, test progress and review results with numbers and the trend versus last week.",
        ),
        ReportField(
            "changeDetails",
            "Change details",
            "State what changed, who requested it and the effect on scope, schedule and cost.",
        ),
        ReportField(
            "nextWeekPlan",
            "Plan for next week",
            "List next week's tasks with target completion and dependencies. " + _BULLETS,
        ),
        ReportField(
            "supportRequests",
            "Support and decision requests",
            "Name the decision or support needed, from whom, and the deadline after which the plan slips.",
        ),
        ReportField("resourceConcerns", "Resource concerns", "Quantify shortfalls in person-days and name the affected phase."),
        ReportField("customerConcerns", "Customer concerns", "Separate facts reported by the customer from the team's interpretation."),
        ReportField("environmentConcerns", "Environment concerns", "Identify the environment, the outage or limitation and its duration."),
        ReportField("costConcerns", "Cost concerns", "Give the expected overrun amount and the cause."),
        ReportField("knowledgeConcerns", "Knowledge and skill concerns", "Name the missing skill, who lacks it and the mitigation."),
        ReportField("trainingConcerns", "Training concerns", "State the training needed, the audience and the schedule."),
        ReportField(
            "urgentIssues",
            "Urgent issue details",
            "Lead with the required action and deadline, then the background in two sentences or fewer.",
        ),
        ReportField(
            "businessOpportunities",
            "Business opportunities and customer needs",
            "Describe the need, the customer who raised it and a rough size of the opportunity.",
        ),
    ]
}


def get_field(key: str) -> Optional[ReportField]:
    return REPORT_FIELDS.get(key)


def field_label(key: str) -> str:
    field = REPORT_FIELDS.get(key)
    return field.label if field else key


def layout_requirements(key: str) -> str:
    field = REPORT_FIELDS.get(key)
    return field.layout_requirements if field else ""


def list_fields() -> List[ReportField]:
    return list(REPORT_FIELDS.values())
