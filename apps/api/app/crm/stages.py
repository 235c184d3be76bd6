"""Stage catalog and the stage -> win-probability policy.

Stage keys and probabilities are shared with the web client and must not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Stage(StrEnum):
    GIFT_SENT = "gift_sent"
    RESPONDED = "responded"
    MEETING = "meeting"
    CLOSING = "closing"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"
    # legacy keys still present on older deals
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"


@dataclass(frozen=True, slots=True)
class StageDefinition:
    id: Stage
    label: str
    default_probability: int
    is_legacy: bool = False

    @property
    def is_closed(self) -> bool:
        return self.id in CLOSED_STAGES


UNKNOWN_STAGE_PROBABILITY = 20

CLOSED_STAGES = frozenset({Stage.CLOSED_WON, Stage.CLOSED_LOST})

STAGE_DEFINITIONS: dict[Stage, StageDefinition] = {
    definition.id: definition
    for definition in (
        StageDefinition(Stage.GIFT_SENT, "Gift Sent", 20),
        StageDefinition(Stage.RESPONDED, "Responded", 40),
        StageDefinition(Stage.MEETING, "Meeting Scheduled", 60),
        StageDefinition(Stage.CLOSING, "Closing", 80),
        StageDefinition(Stage.CLOSED_WON, "Closed Won", 100),
        StageDefinition(Stage.CLOSED_LOST, "Closed Lost", 0),
        StageDefinition(Stage.QUALIFICATION, "Qualification", 20, is_legacy=True),
        StageDefinition(Stage.PROPOSAL, "Proposal Sent", 60, is_legacy=True),
        StageDefinition(Stage.NEGOTIATION, "Negotiation", 80, is_legacy=True),
    )
}


def parse_stage(value: str | None) -> Stage | None:
    if value is None:
        return None
    try:
        return Stage(value)
    except ValueError:
        return None


def probability_for(stage: str | None) -> int:
    """Default win-probability for ``stage``.

    Unknown keys are tolerated and resolve to 20 rather than raising.
    """
    known = parse_stage(stage)
    if known is None:
        return UNKNOWN_STAGE_PROBABILITY
    return STAGE_DEFINITIONS[known].default_probability


def is_closed(stage: str | None) -> bool:
    return parse_stage(stage) in CLOSED_STAGES


def is_known(stage: str | None) -> bool:
    return parse_stage(stage) is not None


def active_stages() -> list[StageDefinition]:
    return [definition for definition in STAGE_DEFINITIONS.values() if not definition.is_legacy]


def label_for(stage: str | None) -> str:
    known = parse_stage(stage)
    if known is None:
        return stage or "none"
    return STAGE_DEFINITIONS[known].label
