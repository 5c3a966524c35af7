from __future__ import annotations

from enum import Enum


class OrganizationType(str, Enum):
    RESTAURANT = "restaurant"
    FOOD_SERVICE = "food_service"
    DISTRIBUTOR = "distributor"
    MANUFACTURER = "manufacturer"


class OrganizationPriority(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"


class InfluenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ContactMethod(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    SMS = "sms"
    IN_PERSON = "in_person"


class RelationshipType(str, Enum):
    REPORTS_TO = "reports_to"
    COLLEAGUE = "colleague"
    COLLABORATES_WITH = "collaborates_with"
    MENTOR = "mentor"
    MENTEE = "mentee"


class RelationshipStrength(str, Enum):
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"


class InteractionType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    MEETING = "meeting"
    SMS = "sms"
    NOTE = "note"
    TASK = "task"
    FOLLOW_UP = "follow_up"


class InteractionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class OpportunityStage(str, Enum):
    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"

    @property
    def probability(self) -> int:
        return STAGE_PROBABILITY[self]

    @property
    def is_closed(self) -> bool:
        return self in CLOSED_STAGES


STAGE_PROBABILITY: dict[OpportunityStage, int] = {
    OpportunityStage.PROSPECTING: 10,
    OpportunityStage.QUALIFICATION: 25,
    OpportunityStage.PROPOSAL: 50,
    OpportunityStage.NEGOTIATION: 75,
    OpportunityStage.CLOSED_WON: 100,
    OpportunityStage.CLOSED_LOST: 0,
}

CLOSED_STAGES = frozenset({OpportunityStage.CLOSED_WON, OpportunityStage.CLOSED_LOST})


def probability_for_stage(stage: OpportunityStage | str) -> int:
    return STAGE_PROBABILITY[OpportunityStage(stage)]
