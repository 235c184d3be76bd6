from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from enum import StrEnum

from app.crm.stages import Stage, parse_stage


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True, slots=True)
class TaskSpec:
    title: str
    description: str
    priority: TaskPriority
    day_offset: int

    def due_on(self, base_date: date) -> date:
        return base_date + timedelta(days=self.day_offset)


TASK_TEMPLATES: dict[Stage, tuple[TaskSpec, ...]] = {
    Stage.GIFT_SENT: (
        TaskSpec(
            "Confirm gift delivery",
            "Check that the gift arrived and note who received it.",
            TaskPriority.MEDIUM,
            2,
        ),
        TaskSpec(
            "Send follow-up email",
            "Reference the gift and propose a short introduction call.",
            TaskPriority.HIGH,
            3,
        ),
        TaskSpec(
            "Follow-up call",
            "Call the contact if the follow-up email has not been answered.",
            TaskPriority.MEDIUM,
            7,
        ),
    ),
    Stage.RESPONDED: (
        TaskSpec(
            "Reply to contact",
            "Answer the contact's response and thank them for getting back.",
            TaskPriority.HIGH,
            0,
        ),
        TaskSpec(
            "Research company needs",
            "Review the company's current website and note improvement opportunities.",
            TaskPriority.MEDIUM,
            1,
        ),
        TaskSpec(
            "Propose meeting times",
            "Offer two or three slots for a discovery meeting.",
            TaskPriority.HIGH,
            1,
        ),
    ),
    Stage.MEETING: (
        TaskSpec(
            "Prepare meeting agenda",
            "Draft the agenda and questions for the discovery meeting.",
            TaskPriority.HIGH,
            0,
        ),
        TaskSpec(
            "Send meeting recap",
            "Email a summary of the meeting with agreed next steps.",
            TaskPriority.HIGH,
            1,
        ),
        TaskSpec(
            "Draft proposal",
            "Prepare scope, timeline and pricing based on the meeting notes.",
            TaskPriority.MEDIUM,
            3,
        ),
    ),
    Stage.CLOSING: (
        TaskSpec(
            "Send contract for signature",
            "Send the final contract and invoice details.",
            TaskPriority.URGENT,
            0,
        ),
        TaskSpec(
            "Follow up on contract",
            "Check on the signature status and answer open questions.",
            TaskPriority.HIGH,
            2,
        ),
        TaskSpec(
            "Schedule kickoff call",
            "Book the project kickoff once the contract is signed.",
            TaskPriority.MEDIUM,
            5,
        ),
    ),
}


def tasks_for(stage: str | None) -> list[TaskSpec]:
    known = parse_stage(stage)
    if known is None or known not in TASK_TEMPLATES:
        return []
    return list(TASK_TEMPLATES[known])


def templated_stages() -> list[Stage]:
    return list(TASK_TEMPLATES)
