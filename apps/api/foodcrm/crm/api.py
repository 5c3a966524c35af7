from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from foodcrm.api.errors import failure
from foodcrm.core.auth import ActorUser
from foodcrm.core.database import get_db
from foodcrm.core.rbac import get_current_actor, require_permission
from foodcrm.crm.enums import InteractionType, OpportunityStage, OrganizationPriority, OrganizationType
from foodcrm.crm.schemas import (
    ContactCreate,
    ContactEngagementMetrics,
    ContactMergeRequest,
    ContactRead,
    ContactRelationshipCreate,
    ContactRelationshipRead,
    ContactUpdate,
    ForecastPeriod,
    InteractionAnalytics,
    InteractionCancelRequest,
    InteractionCompleteRequest,
    InteractionCreate,
    InteractionRead,
    InteractionRescheduleRequest,
    InteractionUpdate,
    OpportunityAnalytics,
    OpportunityCreate,
    OpportunityRead,
    OpportunityStageTransitionRequest,
    OpportunityUpdate,
    OrganizationAnalytics,
    OrganizationBulkPriorityRequest,
    OrganizationBulkSegmentRequest,
    OrganizationCreate,
    OrganizationHierarchyRead,
    OrganizationMergeRequest,
    OrganizationPerformanceMetrics,
    OrganizationRead,
    OrganizationUpdate,
    Page,
    SalesForecast,
)
from foodcrm.crm.service import ContactService, InteractionService, OpportunityService, OrganizationService

organizations_router = APIRouter(prefix="/api/organizations", tags=["crm.organizations"])
contacts_router = APIRouter(prefix="/api/contacts", tags=["crm.contacts"])
interactions_router = APIRouter(prefix="/api/interactions", tags=["crm.interactions"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["crm.opportunities"])

organization_service = OrganizationService()
contact_service = ContactService()
interaction_service = InteractionService()
opportunity_service = OpportunityService()


# Organizations


@organizations_router.post("", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(
    request: Request,
    dto: OrganizationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OrganizationRead | JSONResponse:
    try:
        require_permission(user, "organizations", "create")
        return organization_service.create_organization(db, user, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="create")


@organizations_router.get("", response_model=Page[OrganizationRead])
@organizations_router.get("/search", response_model=Page[OrganizationRead])
def search_organizations(
    request: Request,
    query: str | None = Query(default=None, alias="q"),
    type_filter: OrganizationType | None = Query(default=None, alias="type"),
    priority: OrganizationPriority | None = Query(default=None),
    segment: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Page[OrganizationRead] | JSONResponse:
    try:
        require_permission(user, "organizations", "read")
        return organization_service.search_organizations(
            db,
            query=query,
            type=type_filter.value if type_filter else None,
            priority=priority.value if priority else None,
            segment=segment,
            is_active=is_active,
            page=page,
            limit=limit,
        )
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="search")


@organizations_router.get("/duplicates", response_model=list[list[OrganizationRead]])
def find_duplicate_organizations(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[list[OrganizationRead]] | JSONResponse:
    try:
        require_permission(user, "organizations", "read")
        return organization_service.find_duplicate_organizations(db)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="find_duplicates")


@organizations_router.get("/analytics", response_model=OrganizationAnalytics)
def get_organization_analytics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OrganizationAnalytics | JSONResponse:
    try:
        require_permission(user, "analytics", "read")
        return organization_service.get_organization_analytics(db)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="analyze")


@organizations_router.post("/merge", response_model=OrganizationRead)
def merge_organizations(
    request: Request,
    dto: OrganizationMergeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OrganizationRead | JSONResponse:
    try:
        require_permission(user, "organizations", "update")
        require_permission(user, "organizations", "delete")
        return organization_service.merge_organizations(db, user, dto.target_id, dto.source_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="merge")


@organizations_router.post("/bulk/priority", response_model=list[OrganizationRead])
def bulk_update_priority(
    request: Request,
    dto: OrganizationBulkPriorityRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[OrganizationRead] | JSONResponse:
    try:
        require_permission(user, "organizations", "update")
        return organization_service.bulk_update_priority(db, user, dto.organization_ids, dto.priority.value)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="bulk_update")


@organizations_router.post("/bulk/segment", response_model=list[OrganizationRead])
def bulk_update_segment(
    request: Request,
    dto: OrganizationBulkSegmentRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[OrganizationRead] | JSONResponse:
    try:
        require_permission(user, "organizations", "update")
        return organization_service.bulk_update_segment(db, user, dto.organization_ids, dto.segment)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="bulk_update")


@organizations_router.get("/{organization_id}", response_model=OrganizationRead)
def get_organization(
    request: Request,
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OrganizationRead | JSONResponse:
    try:
        require_permission(user, "organizations", "read")
        return organization_service.get_organization(db, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="get")


@organizations_router.patch("/{organization_id}", response_model=OrganizationRead)
def update_organization(
    request: Request,
    organization_id: uuid.UUID,
    dto: OrganizationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OrganizationRead | JSONResponse:
    try:
        require_permission(user, "organizations", "update")
        return organization_service.update_organization(db, user, organization_id, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="update")


@organizations_router.delete("/{organization_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_organization(
    request: Request,
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Any:
    try:
        require_permission(user, "organizations", "delete")
        organization_service.delete_organization(db, user, organization_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="delete")


@organizations_router.get("/{organization_id}/hierarchy", response_model=OrganizationHierarchyRead)
def get_organization_hierarchy(
    request: Request,
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OrganizationHierarchyRead | JSONResponse:
    try:
        require_permission(user, "organizations", "read")
        return organization_service.get_organization_hierarchy(db, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="get_hierarchy")


@organizations_router.get("/{organization_id}/metrics", response_model=OrganizationPerformanceMetrics)
def get_organization_performance_metrics(
    request: Request,
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OrganizationPerformanceMetrics | JSONResponse:
    try:
        require_permission(user, "analytics", "read")
        return organization_service.get_organization_performance_metrics(db, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="organization", operation="get_metrics")


@organizations_router.get("/{organization_id}/contacts", response_model=list[ContactRead])
def get_contacts_by_organization(
    request: Request,
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "contacts", "read")
        return contact_service.get_contacts_by_organization(db, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="list")


@organizations_router.get("/{organization_id}/interactions", response_model=list[InteractionRead])
def get_interactions_by_organization(
    request: Request,
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[InteractionRead] | JSONResponse:
    try:
        require_permission(user, "interactions", "read")
        return interaction_service.get_interactions_by_organization(db, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="list")


# Contacts


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts", "create")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="create")


@contacts_router.get("", response_model=Page[ContactRead])
@contacts_router.get("/search", response_model=Page[ContactRead])
def search_contacts(
    request: Request,
    query: str | None = Query(default=None, alias="q"),
    organization_id: uuid.UUID | None = Query(default=None),
    role: str | None = Query(default=None),
    is_decision_maker: bool | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Page[ContactRead] | JSONResponse:
    try:
        require_permission(user, "contacts", "read")
        return contact_service.search_contacts(
            db,
            query=query,
            organization_id=organization_id,
            role=role,
            is_decision_maker=is_decision_maker,
            is_active=is_active,
            page=page,
            limit=limit,
        )
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="search")


@contacts_router.get("/decision-makers", response_model=list[ContactRead])
def get_decision_makers(
    request: Request,
    organization_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "contacts", "read")
        return contact_service.get_decision_makers(db, organization_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="list")


@contacts_router.post("/merge", response_model=ContactRead)
def merge_contacts(
    request: Request,
    dto: ContactMergeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts", "update")
        require_permission(user, "contacts", "delete")
        return contact_service.merge_contacts(db, user, dto.target_id, dto.source_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="merge")


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts", "read")
        return contact_service.get_contact(db, contact_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="get")


@contacts_router.patch("/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts", "update")
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="update")


@contacts_router.delete("/{contact_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Any:
    try:
        require_permission(user, "contacts", "delete")
        contact_service.delete_contact(db, user, contact_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="delete")


@contacts_router.get("/{contact_id}/relationships", response_model=list[ContactRelationshipRead])
def get_contact_relationships(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[ContactRelationshipRead] | JSONResponse:
    try:
        require_permission(user, "contacts", "read")
        return contact_service.get_contact_relationships(db, contact_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact_relationship", operation="list")


@contacts_router.post(
    "/{contact_id}/relationships",
    response_model=ContactRelationshipRead,
    status_code=status.HTTP_201_CREATED,
)
def create_contact_relationship(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactRelationshipCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactRelationshipRead | JSONResponse:
    try:
        require_permission(user, "contacts", "update")
        return contact_service.create_contact_relationship(db, user, contact_id, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact_relationship", operation="create")


@contacts_router.get("/{contact_id}/history", response_model=list[InteractionRead])
def get_contact_communication_history(
    request: Request,
    contact_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[InteractionRead] | JSONResponse:
    try:
        require_permission(user, "interactions", "read")
        return contact_service.get_contact_communication_history(db, contact_id, limit)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="get_history")


@contacts_router.get("/{contact_id}/engagement", response_model=ContactEngagementMetrics)
def get_contact_engagement_metrics(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactEngagementMetrics | JSONResponse:
    try:
        require_permission(user, "analytics", "read")
        return contact_service.get_contact_engagement_metrics(db, contact_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="contact", operation="get_engagement")


@contacts_router.get("/{contact_id}/interactions", response_model=list[InteractionRead])
def get_interactions_by_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[InteractionRead] | JSONResponse:
    try:
        require_permission(user, "interactions", "read")
        return interaction_service.get_interactions_by_contact(db, contact_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="list")


# Interactions


@interactions_router.post("", response_model=InteractionRead, status_code=status.HTTP_201_CREATED)
def create_interaction(
    request: Request,
    dto: InteractionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InteractionRead | JSONResponse:
    try:
        require_permission(user, "interactions", "create")
        return interaction_service.create_interaction(db, user, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="create")


@interactions_router.get("", response_model=Page[InteractionRead])
@interactions_router.get("/search", response_model=Page[InteractionRead])
def search_interactions(
    request: Request,
    type_filter: InteractionType | None = Query(default=None, alias="type"),
    contact_id: uuid.UUID | None = Query(default=None),
    organization_id: uuid.UUID | None = Query(default=None),
    is_completed: bool | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Page[InteractionRead] | JSONResponse:
    try:
        require_permission(user, "interactions", "read")
        return interaction_service.search_interactions(
            db,
            type=type_filter.value if type_filter else None,
            contact_id=contact_id,
            organization_id=organization_id,
            is_completed=is_completed,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="search")


@interactions_router.get("/scheduled", response_model=list[InteractionRead])
def get_scheduled_interactions(
    request: Request,
    user_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[InteractionRead] | JSONResponse:
    try:
        require_permission(user, "interactions", "read")
        return interaction_service.get_scheduled_interactions(db, user_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="list")


@interactions_router.get("/analytics", response_model=InteractionAnalytics)
def get_interaction_analytics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InteractionAnalytics | JSONResponse:
    try:
        require_permission(user, "analytics", "read")
        return interaction_service.get_interaction_analytics(db)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="analyze")


@interactions_router.get("/{interaction_id}", response_model=InteractionRead)
def get_interaction(
    request: Request,
    interaction_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InteractionRead | JSONResponse:
    try:
        require_permission(user, "interactions", "read")
        return interaction_service.get_interaction(db, interaction_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="get")


@interactions_router.patch("/{interaction_id}", response_model=InteractionRead)
def update_interaction(
    request: Request,
    interaction_id: uuid.UUID,
    dto: InteractionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InteractionRead | JSONResponse:
    try:
        require_permission(user, "interactions", "update")
        return interaction_service.update_interaction(db, user, interaction_id, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="update")


@interactions_router.delete("/{interaction_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_interaction(
    request: Request,
    interaction_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Any:
    try:
        require_permission(user, "interactions", "delete")
        interaction_service.delete_interaction(db, user, interaction_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="delete")


@interactions_router.post("/{interaction_id}/complete", response_model=InteractionRead)
def complete_interaction(
    request: Request,
    interaction_id: uuid.UUID,
    dto: InteractionCompleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InteractionRead | JSONResponse:
    try:
        require_permission(user, "interactions", "update")
        return interaction_service.complete_interaction(db, user, interaction_id, dto.outcome, dto.next_steps)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="complete")


@interactions_router.post("/{interaction_id}/cancel", response_model=InteractionRead)
def cancel_interaction(
    request: Request,
    interaction_id: uuid.UUID,
    dto: InteractionCancelRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InteractionRead | JSONResponse:
    try:
        require_permission(user, "interactions", "update")
        return interaction_service.cancel_interaction(db, user, interaction_id, dto.reason)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="cancel")


@interactions_router.post("/{interaction_id}/reschedule", response_model=InteractionRead)
def reschedule_interaction(
    request: Request,
    interaction_id: uuid.UUID,
    dto: InteractionRescheduleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InteractionRead | JSONResponse:
    try:
        require_permission(user, "interactions", "update")
        return interaction_service.reschedule_interaction(db, user, interaction_id, dto.scheduled_at)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="reschedule")


@interactions_router.get("/{interaction_id}/chain", response_model=list[InteractionRead])
def get_interaction_chain(
    request: Request,
    interaction_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[InteractionRead] | JSONResponse:
    try:
        require_permission(user, "interactions", "read")
        return interaction_service.get_interaction_chain(db, interaction_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="interaction", operation="get_chain")


# Opportunities


@opportunities_router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "create")
        return opportunity_service.create_opportunity(db, user, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="create")


@opportunities_router.get("", response_model=Page[OpportunityRead])
@opportunities_router.get("/search", response_model=Page[OpportunityRead])
def search_opportunities(
    request: Request,
    query: str | None = Query(default=None, alias="q"),
    stage: OpportunityStage | None = Query(default=None),
    organization_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    assigned_user_id: str | None = Query(default=None),
    min_value: Decimal | None = Query(default=None),
    max_value: Decimal | None = Query(default=None),
    close_date_from: date | None = Query(default=None),
    close_date_to: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Page[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "opportunities", "read")
        return opportunity_service.search_opportunities(
            db,
            query=query,
            stage=stage.value if stage else None,
            organization_id=organization_id,
            contact_id=contact_id,
            assigned_user_id=assigned_user_id,
            min_value=min_value,
            max_value=max_value,
            close_date_from=close_date_from,
            close_date_to=close_date_to,
            page=page,
            limit=limit,
        )
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="search")


@opportunities_router.get("/closing-this-month", response_model=list[OpportunityRead])
def get_opportunities_closing_this_month(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "opportunities", "read")
        return opportunity_service.get_opportunities_closing_this_month(db)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="list")


@opportunities_router.get("/by-stage/{stage}", response_model=list[OpportunityRead])
def get_opportunities_by_stage(
    request: Request,
    stage: OpportunityStage,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "opportunities", "read")
        return opportunity_service.get_opportunities_by_stage(db, stage)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="list")


@opportunities_router.get("/by-user/{user_id}", response_model=list[OpportunityRead])
def get_opportunities_by_user(
    request: Request,
    user_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "opportunities", "read")
        return opportunity_service.get_opportunities_by_user(db, user_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="list")


@opportunities_router.get("/analytics", response_model=OpportunityAnalytics)
def get_opportunity_analytics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OpportunityAnalytics | JSONResponse:
    try:
        require_permission(user, "analytics", "read")
        return opportunity_service.get_opportunity_analytics(db)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="analyze")


@opportunities_router.get("/forecast", response_model=SalesForecast)
def get_sales_forecast(
    request: Request,
    period: ForecastPeriod = Query(default="month"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> SalesForecast | JSONResponse:
    try:
        require_permission(user, "analytics", "read")
        return opportunity_service.get_sales_forecast(db, period)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="forecast")


@opportunities_router.get("/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="get")


@opportunities_router.patch("/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "update")
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="update")


@opportunities_router.delete("/{opportunity_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Any:
    try:
        require_permission(user, "opportunities", "delete")
        opportunity_service.delete_opportunity(db, user, opportunity_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="delete")


@opportunities_router.post("/{opportunity_id}/stage", response_model=OpportunityRead)
def transition_stage(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityStageTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "update")
        return opportunity_service.transition_stage(db, user, opportunity_id, dto.stage, dto.reason)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="change_stage")


@opportunities_router.post(
    "/{opportunity_id}/clone",
    response_model=OpportunityRead,
    status_code=status.HTTP_201_CREATED,
)
def clone_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "create")
        return opportunity_service.clone_opportunity(db, user, opportunity_id)
    except HTTPException as exc:
        return failure(request, exc, area="crm", entity="opportunity", operation="clone")
