from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Generic, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from foodcrm.crm.enums import (
    ContactMethod,
    InfluenceLevel,
    InteractionPriority,
    InteractionType,
    OpportunityStage,
    OrganizationPriority,
    OrganizationType,
    RelationshipStrength,
    RelationshipType,
)

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    data: list[T]
    total: int
    page: int
    limit: int


# Organizations


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    type: OrganizationType
    priority: OrganizationPriority = OrganizationPriority.C
    segment: str | None = None
    description: str | None = None
    website: str | None = None
    phone: str | None = None
    email: EmailStr | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    annual_revenue: Decimal | None = Field(default=None, ge=0)
    employee_count: int | None = Field(default=None, ge=0)
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    parent_organization_id: UUID | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class OrganizationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    type: OrganizationType | None = None
    priority: OrganizationPriority | None = None
    segment: str | None = None
    description: str | None = None
    website: str | None = None
    phone: str | None = None
    email: EmailStr | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    annual_revenue: Decimal | None = Field(default=None, ge=0)
    employee_count: int | None = Field(default=None, ge=0)
    tags: list[str] | None = None
    notes: str | None = None
    parent_organization_id: UUID | None = None
    is_active: bool | None = None
    row_version: int | None = None


class OrganizationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: str
    priority: str


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: str
    priority: str
    segment: str | None
    description: str | None
    website: str | None
    phone: str | None
    email: str | None
    street: str | None
    city: str | None
    state: str | None
    postal_code: str | None
    country: str | None
    annual_revenue: Decimal | None
    employee_count: int | None
    tags: list[str]
    notes: str | None
    parent_organization_id: UUID | None
    merged_into_id: UUID | None
    is_active: bool
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class OrganizationHierarchyRead(BaseModel):
    organization: OrganizationRead
    parent: OrganizationRead | None
    children: list[OrganizationRead]
    siblings: list[OrganizationRead]


class OrganizationMergeRequest(BaseModel):
    target_id: UUID
    source_id: UUID


class OrganizationBulkPriorityRequest(BaseModel):
    organization_ids: list[UUID] = Field(min_length=1)
    priority: OrganizationPriority


class OrganizationBulkSegmentRequest(BaseModel):
    organization_ids: list[UUID] = Field(min_length=1)
    segment: str = Field(min_length=1)


class OrganizationAnalytics(BaseModel):
    total_organizations: int
    active_count: int
    inactive_count: int
    by_type: dict[str, int]
    by_priority: dict[str, int]
    by_segment: dict[str, int]
    by_state: dict[str, int]
    total_revenue: Decimal
    average_revenue: Decimal


class OrganizationPerformanceMetrics(BaseModel):
    organization_id: UUID
    total_interactions: int
    last_interaction_date: datetime | None
    total_opportunities: int
    open_opportunities: int
    total_opportunity_value: Decimal
    avg_opportunity_value: Decimal
    win_rate: float


# Contacts


class ContactCreate(BaseModel):
    organization_id: UUID
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = None
    mobile_phone: str | None = None
    title: str | None = None
    department: str | None = None
    role: str | None = None
    influence_level: InfluenceLevel | None = None
    is_decision_maker: bool = False
    is_primary: bool = False
    preferred_contact_method: ContactMethod | None = None
    notes: str | None = None


class ContactUpdate(BaseModel):
    organization_id: UUID | None = None
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = None
    mobile_phone: str | None = None
    title: str | None = None
    department: str | None = None
    role: str | None = None
    influence_level: InfluenceLevel | None = None
    is_decision_maker: bool | None = None
    is_primary: bool | None = None
    preferred_contact_method: ContactMethod | None = None
    notes: str | None = None
    is_active: bool | None = None
    row_version: int | None = None


class ContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None
    organization_id: UUID


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    mobile_phone: str | None
    title: str | None
    department: str | None
    role: str | None
    influence_level: str | None
    is_decision_maker: bool
    is_primary: bool
    preferred_contact_method: str | None
    notes: str | None
    merged_into_id: UUID | None
    is_active: bool
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int
    organization: OrganizationSummary | None = None


class ContactRelationshipCreate(BaseModel):
    related_contact_id: UUID
    relationship_type: RelationshipType
    strength: RelationshipStrength = RelationshipStrength.MODERATE
    notes: str | None = None


class ContactRelationshipRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    related_contact_id: UUID
    relationship_type: str
    strength: str
    notes: str | None
    created_by: str | None
    created_at: datetime


class ContactEngagementMetrics(BaseModel):
    contact_id: UUID
    total_interactions: int
    completed_interactions: int
    last_interaction_date: datetime | None
    by_type: dict[str, int]
    completion_rate: float


class ContactMergeRequest(BaseModel):
    target_id: UUID
    source_id: UUID


# Interactions


class InteractionCreate(BaseModel):
    type: InteractionType
    subject: str = Field(min_length=1, max_length=255)
    description: str | None = None
    contact_id: UUID | None = None
    organization_id: UUID | None = None
    opportunity_id: UUID | None = None
    scheduled_at: datetime | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    priority: InteractionPriority = InteractionPriority.MEDIUM
    outcome: str | None = None
    next_steps: str | None = None

    @model_validator(mode="after")
    def _require_target(self) -> InteractionCreate:
        if self.contact_id is None and self.organization_id is None:
            raise ValueError("contact_id or organization_id is required")
        return self


class InteractionUpdate(BaseModel):
    type: InteractionType | None = None
    subject: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    contact_id: UUID | None = None
    organization_id: UUID | None = None
    opportunity_id: UUID | None = None
    scheduled_at: datetime | None = None
    completed_at: datetime | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    priority: InteractionPriority | None = None
    outcome: str | None = None
    next_steps: str | None = None
    row_version: int | None = None


class InteractionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    subject: str
    description: str | None
    contact_id: UUID | None
    organization_id: UUID | None
    opportunity_id: UUID | None
    parent_interaction_id: UUID | None
    scheduled_at: datetime | None
    completed_at: datetime | None
    duration_minutes: int | None
    outcome: str | None
    next_steps: str | None
    priority: str
    is_completed: bool
    is_cancelled: bool
    cancel_reason: str | None
    is_active: bool
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    contact: ContactSummary | None = None
    organization: OrganizationSummary | None = None


class InteractionCompleteRequest(BaseModel):
    outcome: str = Field(min_length=1)
    next_steps: str | None = None


class InteractionCancelRequest(BaseModel):
    reason: str = Field(min_length=1)


class InteractionRescheduleRequest(BaseModel):
    scheduled_at: datetime


class InteractionAnalytics(BaseModel):
    total_interactions: int
    by_type: dict[str, int]
    completed: int
    cancelled: int
    pending: int
    overdue: int
    completion_rate: float
    average_duration_minutes: float


# Opportunities


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    organization_id: UUID
    contact_id: UUID | None = None
    stage: OpportunityStage = OpportunityStage.PROSPECTING
    value: Decimal
    expected_close_date: date | None = None
    description: str | None = None
    source: str | None = None
    assigned_user_id: str | None = None


class OpportunityUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    contact_id: UUID | None = None
    stage: OpportunityStage | None = None
    stage_reason: str | None = None
    value: Decimal | None = None
    expected_close_date: date | None = None
    description: str | None = None
    source: str | None = None
    assigned_user_id: str | None = None
    row_version: int | None = None


class OpportunityStageTransitionRequest(BaseModel):
    stage: OpportunityStage
    reason: str | None = None


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    from_stage: str | None
    to_stage: str
    reason: str | None
    changed_by: str | None
    changed_at: datetime


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    organization_id: UUID
    contact_id: UUID | None
    stage: str
    probability: int
    value: Decimal
    expected_close_date: date | None
    actual_close_date: date | None
    close_reason: str | None
    description: str | None
    source: str | None
    assigned_user_id: str | None
    is_active: bool
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    organization: OrganizationSummary | None = None
    contact: ContactSummary | None = None
    stage_history: list[StageHistoryRead] = Field(default_factory=list)


class StageBreakdown(BaseModel):
    count: int
    value: Decimal


class OpportunityAnalytics(BaseModel):
    total_opportunities: int
    total_value: Decimal
    by_stage: dict[str, StageBreakdown]
    won_count: int
    lost_count: int
    conversion_rate: float
    average_deal_size: Decimal
    average_sales_cycle_days: float


ForecastPeriod = Literal["month", "quarter", "year"]


class SalesForecast(BaseModel):
    period: ForecastPeriod
    period_start: date
    period_end: date
    total_pipeline: Decimal
    weighted_pipeline: Decimal
    best_case: Decimal
    worst_case: Decimal
    closing_this_period: Decimal
    at_risk: Decimal
    opportunity_count: int
