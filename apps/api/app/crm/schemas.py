from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


LeadStatus = Literal["new", "contacted", "qualified", "proposal", "won", "lost"]
TaskPriorityValue = Literal["low", "medium", "high", "urgent"]
TaskStatusValue = Literal["pending", "in_progress", "completed", "cancelled"]
ActivityType = Literal["note", "call", "email", "meeting", "proposal", "follow_up", "other"]
ContactMethod = Literal["phone", "email", "in_person", "video_call", "text", "other"]
ConversationOutcome = Literal[
    "positive",
    "neutral",
    "negative",
    "no_answer",
    "callback_requested",
    "meeting_scheduled",
]
JourneyEntityType = Literal["lead", "opportunity", "client"]


class PartialUpdate(BaseModel):
    """PATCH body: omitted keys stay untouched, explicit nulls clear nullable columns only."""

    non_nullable: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def reject_null_required_fields(self) -> "PartialUpdate":
        cleared = sorted(name for name in self.non_nullable & self.model_fields_set if getattr(self, name) is None)
        if cleared:
            raise ValueError(f"fields cannot be null: {', '.join(cleared)}")
        return self


class LeadCreate(BaseModel):
    status: LeadStatus = "new"
    company_name: str | None = None
    contact_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    website: str | None = None
    source: str | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    next_follow_up: date | None = None
    owner_user_id: UUID | None = None


class LeadUpdate(PartialUpdate):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"status", "contact_name"})

    row_version: int = Field(ge=1)
    status: LeadStatus | None = None
    company_name: str | None = None
    contact_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    website: str | None = None
    source: str | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    next_follow_up: date | None = None
    owner_user_id: UUID | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: str
    company_name: str | None
    contact_name: str
    email: str | None
    phone: str | None
    website: str | None
    source: str | None
    estimated_value: Decimal | None
    notes: str | None
    next_follow_up: date | None
    owner_user_id: UUID | None
    converted_opportunity_id: UUID | None
    converted_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadPromoteRequest(BaseModel):
    stage: str | None = None
    schedule_date: date | None = None
    deal_name: str | None = None
    deal_value: Decimal | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    owner_user_id: UUID | None = None
    notes: str | None = None


class OpportunityCreate(BaseModel):
    company_name: str = Field(min_length=1)
    contact_name: str | None = None
    contact_email: EmailStr | None = None
    contact_phone: str | None = None
    deal_name: str = Field(min_length=1)
    deal_value: Decimal = Field(default=Decimal("0"), ge=0)
    stage: str = "gift_sent"
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    source: str | None = None
    notes: str | None = None
    owner_user_id: UUID | None = None
    lead_id: UUID | None = None
    generate_tasks: bool = True
    schedule_date: date | None = None


class OpportunityFieldEdits(PartialUpdate):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"company_name", "deal_name", "deal_value"})

    company_name: str | None = Field(default=None, min_length=1)
    contact_name: str | None = None
    contact_email: EmailStr | None = None
    contact_phone: str | None = None
    deal_name: str | None = Field(default=None, min_length=1)
    deal_value: Decimal | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    source: str | None = None
    notes: str | None = None
    owner_user_id: UUID | None = None


class OpportunityUpdate(OpportunityFieldEdits):
    row_version: int = Field(ge=1)


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    client_id: UUID | None
    company_name: str
    contact_name: str | None
    contact_email: str | None
    contact_phone: str | None
    deal_name: str
    deal_value: Decimal
    stage: str | None
    probability: int
    expected_close_date: date | None
    source: str | None
    notes: str | None
    owner_user_id: UUID | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class OpportunityStageRequest(BaseModel):
    stage: str = Field(min_length=1, max_length=32)
    probability: int | None = Field(default=None, ge=0, le=100)
    base_date: date | None = None
    generate_tasks: bool | None = None
    changes: OpportunityFieldEdits | None = None


class OpportunityConvertRequest(BaseModel):
    notes: str | None = None


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    priority: TaskPriorityValue = "medium"
    status: TaskStatusValue = "pending"
    due_date: date | None = None
    opportunity_id: UUID | None = None
    lead_id: UUID | None = None
    client_id: UUID | None = None
    owner_user_id: UUID | None = None


class TaskUpdate(PartialUpdate):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"title", "priority", "status"})

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    priority: TaskPriorityValue | None = None
    status: TaskStatusValue | None = None
    due_date: date | None = None
    owner_user_id: UUID | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    opportunity_id: UUID | None
    lead_id: UUID | None
    client_id: UUID | None
    title: str
    description: str | None
    priority: str
    status: str
    due_date: date | None
    completed_at: datetime | None
    owner_user_id: UUID | None
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime


class TransitionRead(BaseModel):
    opportunity: OpportunityRead
    created_tasks: list[TaskRead] = Field(default_factory=list)
    from_stage: str | None
    changed: bool


class ConversationCreate(BaseModel):
    lead_id: UUID | None = None
    opportunity_id: UUID | None = None
    client_id: UUID | None = None
    company_id: UUID | None = None
    activity_type: ActivityType = "note"
    title: str | None = None
    content: str = Field(min_length=1)
    contact_method: ContactMethod | None = None
    outcome: ConversationOutcome | None = None
    next_steps: str | None = None
    follow_up_date: date | None = None

    @model_validator(mode="after")
    def validate_entity_reference(self) -> "ConversationCreate":
        if not any((self.lead_id, self.opportunity_id, self.client_id, self.company_id)):
            raise ValueError("one of lead_id, opportunity_id, client_id or company_id is required")
        return self


class ConversationUpdate(PartialUpdate):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"activity_type", "content"})

    activity_type: ActivityType | None = None
    title: str | None = None
    content: str | None = Field(default=None, min_length=1)
    contact_method: ContactMethod | None = None
    outcome: ConversationOutcome | None = None
    next_steps: str | None = None
    follow_up_date: date | None = None


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    opportunity_id: UUID | None
    client_id: UUID | None
    company_id: UUID | None
    activity_type: str
    title: str | None
    content: str
    contact_method: str | None
    outcome: str | None
    next_steps: str | None
    follow_up_date: date | None
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime


class ConversationPage(BaseModel):
    conversations: list[ConversationRead]
    total: int


class ConversationLinkRequest(BaseModel):
    opportunity_id: UUID | None = None
    client_id: UUID | None = None
    company_id: UUID | None = None


class ConversationBulkLinkRequest(BaseModel):
    from_lead_id: UUID | None = None
    from_opportunity_id: UUID | None = None
    to_opportunity_id: UUID | None = None
    to_client_id: UUID | None = None
    to_company_id: UUID | None = None


class ConversationBulkLinkRead(BaseModel):
    relinked: int


class ConversationOptionsRead(BaseModel):
    activity_types: list[str]
    contact_methods: list[str]
    outcomes: list[str]


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    website: str | None = None
    industry: str | None = None
    phone: str | None = None
    notes: str | None = None


class CompanyUpdate(PartialUpdate):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str | None = Field(default=None, min_length=1)
    website: str | None = None
    industry: str | None = None
    phone: str | None = None
    notes: str | None = None


class ClientCreate(BaseModel):
    company_id: UUID | None = None
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    position: str | None = None
    is_primary_contact: bool = False
    notes: str | None = None


class ClientUpdate(PartialUpdate):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"first_name", "last_name", "is_primary_contact"})

    company_id: UUID | None = None
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    position: str | None = None
    is_primary_contact: bool | None = None
    notes: str | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    website: str | None
    industry: str | None
    phone: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    position: str | None
    is_primary_contact: bool
    notes: str | None
    created_at: datetime
    updated_at: datetime


class LeadPromotionRead(BaseModel):
    lead: LeadRead
    opportunity: OpportunityRead
    tasks: list[TaskRead] = Field(default_factory=list)


class ClientConversionRead(BaseModel):
    opportunity: OpportunityRead
    client: ClientRead
    company: CompanyRead | None = None
    lead: LeadRead | None = None


class StageSummaryRead(BaseModel):
    id: str
    label: str
    default_probability: int
    is_closed: bool
    is_legacy: bool
    has_task_template: bool
    count: int
    total_value: float


class JourneyStageRead(BaseModel):
    entity_type: JourneyEntityType
    entity_id: UUID
    name: str
    status: str | None = None
    stage: str | None = None
    probability: int | None = None
    deal_value: Decimal | None = None
    created_at: datetime
    updated_at: datetime


class StageDurationRead(BaseModel):
    entity_type: JourneyEntityType
    days: int


class JourneyAnalyticsRead(BaseModel):
    total_interactions: int
    interaction_types: dict[str, int]
    outcomes: dict[str, int]
    time_in_each_stage: list[StageDurationRead]
    total_journey_days: int


class JourneyRead(BaseModel):
    stages: list[JourneyStageRead]
    conversations: list[ConversationRead]
    analytics: JourneyAnalyticsRead


class LeadStatusCountRead(BaseModel):
    status: str
    count: int
    total_value: Decimal


class LeadStatsRead(BaseModel):
    by_status: list[LeadStatusCountRead]
    by_source: dict[str, int]
    total_leads: int
    total_value: Decimal
    upcoming_follow_ups: int
    overdue_follow_ups: int


class TaskStatsRead(BaseModel):
    by_status: dict[str, int]
    open_by_priority: dict[str, int]
    total_tasks: int
    completed_tasks: int
    open_tasks: int
    overdue_tasks: int
    due_today: int
    due_this_week: int
