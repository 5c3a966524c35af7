from __future__ import annotations

import logging
import re
import uuid
from calendar import monthrange
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from foodcrm import audit, events
from foodcrm.core.auth import ActorUser
from foodcrm.core.database import as_utc, utcnow
from foodcrm.core.errors import store_errors
from foodcrm.crm.enums import CLOSED_STAGES, OpportunityStage, probability_for_stage
from foodcrm.crm.models import Contact, ContactRelationship, Interaction, Opportunity, Organization
from foodcrm.crm.repositories import (
    ContactRepository,
    InteractionRepository,
    OpportunityRepository,
    OrganizationRepository,
    contact_repository,
    interaction_repository,
    opportunity_repository,
    organization_repository,
)
from foodcrm.crm.schemas import (
    ContactCreate,
    ContactEngagementMetrics,
    ContactRead,
    ContactRelationshipCreate,
    ContactRelationshipRead,
    ContactUpdate,
    ForecastPeriod,
    InteractionAnalytics,
    InteractionCreate,
    InteractionRead,
    InteractionUpdate,
    OpportunityAnalytics,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    OrganizationAnalytics,
    OrganizationCreate,
    OrganizationHierarchyRead,
    OrganizationPerformanceMetrics,
    OrganizationRead,
    OrganizationUpdate,
    Page,
    SalesForecast,
    StageBreakdown,
    StageHistoryRead,
)
from foodcrm.metrics import observe_stage_transition


logger = logging.getLogger("foodcrm.crm")
tracer = trace.get_tracer("foodcrm.crm")

MAX_PAGE_SIZE = 200
_WHITESPACE_RE = re.compile(r"\s+")
_ORGANIZATION_FILL_FIELDS = (
    "segment",
    "description",
    "website",
    "phone",
    "email",
    "street",
    "city",
    "state",
    "postal_code",
    "country",
    "annual_revenue",
    "employee_count",
)
_CONTACT_FILL_FIELDS = ("email", "phone", "mobile_phone", "title", "department", "role", "preferred_contact_method")
_INFLUENCE_RANK = {None: 0, "low": 1, "medium": 2, "high": 3}


def _column_values(dto: BaseModel, *, exclude: set[str] | None = None, exclude_unset: bool = False) -> dict[str, Any]:
    values = dto.model_dump(exclude=exclude or set(), exclude_unset=exclude_unset)
    return {key: (value.value if isinstance(value, Enum) else value) for key, value in values.items()}


def _reject_null_columns(entity: Any, changes: dict[str, Any]) -> None:
    """Partial updates may omit a NOT NULL column but never clear it."""
    columns = entity.__table__.columns
    for key, value in changes.items():
        if value is None and key in columns and not columns[key].nullable:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{key} must not be null",
            )


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


def _check_row_version(entity: Any, expected: int | None) -> None:
    if expected is not None and entity.row_version != expected:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")


def _touch(entity: Any, actor_user: ActorUser) -> None:
    entity.updated_by = actor_user.user_id
    entity.updated_at = utcnow()
    entity.row_version = entity.row_version + 1


def _normalize_name(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value.strip().lower())


def _emit(
    actor_user: ActorUser,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    event_type: str,
    payload: dict[str, Any],
) -> None:
    audit.record(
        actor_user_id=actor_user.user_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        before=before,
        after=after,
        correlation_id=actor_user.correlation_id,
    )
    events.emit(
        event_type,
        actor_user_id=actor_user.user_id,
        payload=payload,
        correlation_id=actor_user.correlation_id,
    )


class OrganizationService:
    entity_type = "crm.organization"

    def __init__(
        self,
        repository: OrganizationRepository | None = None,
        contacts: ContactRepository | None = None,
        interactions: InteractionRepository | None = None,
        opportunities: OpportunityRepository | None = None,
    ) -> None:
        self.repository = repository or organization_repository
        self.contacts = contacts or contact_repository
        self.interactions = interactions or interaction_repository
        self.opportunities = opportunities or opportunity_repository

    def create_organization(self, session: Session, actor_user: ActorUser, dto: OrganizationCreate) -> OrganizationRead:
        if dto.parent_organization_id is not None:
            parent = self.repository.get(session, dto.parent_organization_id)
            if parent is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parent organization not found")
            if not parent.is_active:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="Parent organization is not active",
                )

        if self.repository.find_by_name(session, dto.name):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Organization with this name already exists",
            )

        with store_errors(session, "create organization"):
            organization = Organization(
                **_column_values(dto),
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            self.repository.add(session, organization)
            read_model = self._to_read(organization)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=organization.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="crm.organization.created",
                payload={"organization_id": str(organization.id), "name": organization.name},
            )
            session.commit()
        logger.info("organization.created", extra={"entity_id": str(organization.id)})
        return read_model

    def get_organization(self, session: Session, organization_id: uuid.UUID) -> OrganizationRead:
        return self._to_read(self._get_or_404(session, organization_id))

    def update_organization(
        self,
        session: Session,
        actor_user: ActorUser,
        organization_id: uuid.UUID,
        dto: OrganizationUpdate,
    ) -> OrganizationRead:
        organization = self._get_or_404(session, organization_id)
        _check_row_version(organization, dto.row_version)
        changes = _column_values(dto, exclude={"row_version"}, exclude_unset=True)

        new_parent_id = changes.get("parent_organization_id")
        if new_parent_id is not None and new_parent_id != organization.parent_organization_id:
            self.validate_parent_assignment(session, organization.id, new_parent_id)

        if "name" in changes:
            if changes["name"] is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name must not be blank")
            changes["name"] = changes["name"].strip()
            if _normalize_name(changes["name"]) != _normalize_name(organization.name) and self.repository.find_by_name(
                session, changes["name"], exclude_id=organization.id
            ):
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Organization with this name already exists",
                )

        _reject_null_columns(organization, changes)
        before = self._to_read(organization).model_dump(mode="json")
        with store_errors(session, "update organization"):
            for key, value in changes.items():
                setattr(organization, key, value)
            _touch(organization, actor_user)
            session.flush()
            read_model = self._to_read(organization)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=organization.id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.organization.updated",
                payload={"organization_id": str(organization.id), "changed_fields": sorted(changes)},
            )
            session.commit()
        return read_model

    def validate_parent_assignment(
        self,
        session: Session,
        organization_id: uuid.UUID,
        parent_id: uuid.UUID,
    ) -> None:
        if parent_id == organization_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Organization cannot be its own parent",
            )
        if self.repository.get(session, parent_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parent organization not found")
        if self.creates_cycle(session, organization_id, parent_id):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Circular reference detected in organization hierarchy",
            )

    def creates_cycle(self, session: Session, organization_id: uuid.UUID, parent_id: uuid.UUID) -> bool:
        """Walk parent pointers upward from ``parent_id``; reaching ``organization_id`` means a cycle."""
        visited = {organization_id}
        current: uuid.UUID | None = parent_id
        while current is not None:
            if current in visited:
                return True
            visited.add(current)
            current = self.repository.parent_id_of(session, current)
        return False

    def delete_organization(self, session: Session, actor_user: ActorUser, organization_id: uuid.UUID) -> None:
        organization = self._get_or_404(session, organization_id)
        if self.repository.find_children(session, organization.id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot delete organization with child organizations",
            )

        before = self._to_read(organization).model_dump(mode="json")
        with store_errors(session, "delete organization"):
            self.repository.soft_delete(session, organization, actor_user.user_id)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=organization.id,
                action="delete",
                before=before,
                after=None,
                event_type="crm.organization.deleted",
                payload={"organization_id": str(organization.id)},
            )
            session.commit()

    def search_organizations(
        self,
        session: Session,
        *,
        query: str | None = None,
        type: str | None = None,
        priority: str | None = None,
        segment: str | None = None,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[OrganizationRead]:
        page, limit = _page_bounds(page, limit)
        stmt = self.repository.active_query()
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(
                or_(
                    Organization.name.ilike(pattern),
                    Organization.description.ilike(pattern),
                    Organization.city.ilike(pattern),
                )
            )
        if type:
            stmt = stmt.where(Organization.type == type)
        if priority:
            stmt = stmt.where(Organization.priority == priority)
        if segment:
            stmt = stmt.where(Organization.segment == segment)
        if is_active is not None:
            stmt = stmt.where(Organization.is_active.is_(is_active))

        rows, total = self.repository.paginate(session, stmt.order_by(Organization.name), page, limit)
        return Page[OrganizationRead](data=[self._to_read(row) for row in rows], total=total, page=page, limit=limit)

    def get_organization_hierarchy(self, session: Session, organization_id: uuid.UUID) -> OrganizationHierarchyRead:
        organization = self._get_or_404(session, organization_id)
        parent = (
            self.repository.get(session, organization.parent_organization_id)
            if organization.parent_organization_id is not None
            else None
        )
        siblings: list[Organization] = []
        if parent is not None:
            siblings = [row for row in self.repository.find_children(session, parent.id) if row.id != organization.id]
        return OrganizationHierarchyRead(
            organization=self._to_read(organization),
            parent=self._to_read(parent) if parent is not None else None,
            children=[self._to_read(row) for row in self.repository.find_children(session, organization.id)],
            siblings=[self._to_read(row) for row in siblings],
        )

    def merge_organizations(
        self,
        session: Session,
        actor_user: ActorUser,
        target_id: uuid.UUID,
        source_id: uuid.UUID,
    ) -> OrganizationRead:
        if target_id == source_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Cannot merge organization with itself",
            )
        target = self.repository.get(session, target_id)
        source = self.repository.get(session, source_id)
        if target is None or source is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="One or both organizations not found")

        children = self.repository.find_children(session, source.id)
        for child in children:
            if child.id != target.id and self.creates_cycle(session, child.id, target.id):
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="Circular reference detected in organization hierarchy",
                )

        before = self._to_read(target).model_dump(mode="json")
        with store_errors(session, "merge organizations"):
            for field_name in _ORGANIZATION_FILL_FIELDS:
                if getattr(target, field_name) is None and getattr(source, field_name) is not None:
                    setattr(target, field_name, getattr(source, field_name))
            target.tags = list(dict.fromkeys([*(target.tags or []), *(source.tags or [])]))
            target.priority = min(target.priority, source.priority)
            if source.notes:
                target.notes = "\n\n".join(part for part in (target.notes, source.notes) if part)

            for child in children:
                # the target takes the source's place when it was one of its children
                child.parent_organization_id = source.parent_organization_id if child.id == target.id else target.id
            moved_contacts = self.contacts.reassign_organization(session, source.id, target.id)
            moved_interactions = self.interactions.reassign(session, "organization_id", source.id, target.id)
            moved_opportunities = self.opportunities.reassign(session, "organization_id", source.id, target.id)

            self.repository.soft_delete(session, source, actor_user.user_id, merged_into_id=target.id)
            _touch(target, actor_user)
            session.flush()
            read_model = self._to_read(target)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=target.id,
                action="merge",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.organization.merged",
                payload={
                    "target_id": str(target.id),
                    "source_id": str(source.id),
                    "moved_contacts": moved_contacts,
                    "moved_interactions": moved_interactions,
                    "moved_opportunities": moved_opportunities,
                },
            )
            session.commit()
        return read_model

    def bulk_update_priority(
        self,
        session: Session,
        actor_user: ActorUser,
        organization_ids: list[uuid.UUID],
        priority: str,
    ) -> list[OrganizationRead]:
        return self._bulk_update(session, actor_user, organization_ids, "priority", priority)

    def bulk_update_segment(
        self,
        session: Session,
        actor_user: ActorUser,
        organization_ids: list[uuid.UUID],
        segment: str,
    ) -> list[OrganizationRead]:
        return self._bulk_update(session, actor_user, organization_ids, "segment", segment)

    def find_duplicate_organizations(self, session: Session) -> list[list[OrganizationRead]]:
        groups: dict[str, list[Organization]] = defaultdict(list)
        for organization in self.repository.all_active(session):
            groups[_normalize_name(organization.name)].append(organization)
        return [[self._to_read(row) for row in rows] for rows in groups.values() if len(rows) > 1]

    def get_organization_analytics(self, session: Session) -> OrganizationAnalytics:
        organizations = self.repository.all_active(session)
        revenues = [row.annual_revenue for row in organizations if row.annual_revenue is not None]
        total_revenue = sum(revenues, Decimal("0"))
        return OrganizationAnalytics(
            total_organizations=len(organizations),
            active_count=sum(1 for row in organizations if row.is_active),
            inactive_count=sum(1 for row in organizations if not row.is_active),
            by_type=dict(Counter(row.type for row in organizations)),
            by_priority=dict(Counter(row.priority for row in organizations if row.priority)),
            by_segment=dict(Counter(row.segment for row in organizations if row.segment)),
            by_state=dict(Counter(row.state for row in organizations if row.state)),
            total_revenue=total_revenue,
            average_revenue=(total_revenue / len(revenues)).quantize(Decimal("0.01")) if revenues else Decimal("0"),
        )

    def get_organization_performance_metrics(
        self,
        session: Session,
        organization_id: uuid.UUID,
    ) -> OrganizationPerformanceMetrics:
        organization = self._get_or_404(session, organization_id)
        interactions = self.interactions.for_organization(session, organization.id)
        opportunities = self.opportunities.for_organization(session, organization.id)

        last_interaction = max((as_utc(row.completed_at or row.created_at) for row in interactions), default=None)
        total_value = sum((Decimal(row.value) for row in opportunities), Decimal("0"))
        won = sum(1 for row in opportunities if row.stage == OpportunityStage.CLOSED_WON.value)
        lost = sum(1 for row in opportunities if row.stage == OpportunityStage.CLOSED_LOST.value)
        return OrganizationPerformanceMetrics(
            organization_id=organization.id,
            total_interactions=len(interactions),
            last_interaction_date=last_interaction,
            total_opportunities=len(opportunities),
            open_opportunities=sum(1 for row in opportunities if row.stage not in {s.value for s in CLOSED_STAGES}),
            total_opportunity_value=total_value,
            avg_opportunity_value=(
                (total_value / len(opportunities)).quantize(Decimal("0.01")) if opportunities else Decimal("0")
            ),
            win_rate=round(won / (won + lost) * 100, 2) if (won + lost) else 0.0,
        )

    def _bulk_update(
        self,
        session: Session,
        actor_user: ActorUser,
        organization_ids: list[uuid.UUID],
        field_name: str,
        value: Any,
    ) -> list[OrganizationRead]:
        unique_ids = list(dict.fromkeys(organization_ids))
        organizations = self.repository.get_many(session, unique_ids)
        missing = sorted(str(item) for item in set(unique_ids) - {row.id for row in organizations})
        if missing:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Organizations not found: {', '.join(missing)}",
            )

        value = value.value if isinstance(value, Enum) else value
        results: list[OrganizationRead] = []
        with store_errors(session, f"bulk update organization {field_name}"):
            for organization in organizations:
                before = self._to_read(organization).model_dump(mode="json")
                setattr(organization, field_name, value)
                _touch(organization, actor_user)
                session.flush()
                read_model = self._to_read(organization)
                results.append(read_model)
                _emit(
                    actor_user,
                    entity_type=self.entity_type,
                    entity_id=organization.id,
                    action="bulk_update",
                    before=before,
                    after=read_model.model_dump(mode="json"),
                    event_type="crm.organization.updated",
                    payload={"organization_id": str(organization.id), "changed_fields": [field_name]},
                )
            session.commit()
        return results

    def _get_or_404(self, session: Session, organization_id: uuid.UUID) -> Organization:
        organization = self.repository.get(session, organization_id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
        return organization

    def _to_read(self, organization: Organization) -> OrganizationRead:
        return OrganizationRead.model_validate(organization)


class ContactService:
    entity_type = "crm.contact"

    def __init__(
        self,
        repository: ContactRepository | None = None,
        organizations: OrganizationRepository | None = None,
        interactions: InteractionRepository | None = None,
        opportunities: OpportunityRepository | None = None,
    ) -> None:
        self.repository = repository or contact_repository
        self.organizations = organizations or organization_repository
        self.interactions = interactions or interaction_repository
        self.opportunities = opportunities or opportunity_repository

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        organization = self._get_active_organization(session, dto.organization_id)
        if dto.email is not None and self.repository.find_by_email(session, str(dto.email)):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Contact with this email already exists")

        with store_errors(session, "create contact"):
            if dto.is_primary:
                self._clear_primary(session, organization.id)
            contact = Contact(
                **_column_values(dto),
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            contact.first_name = contact.first_name.strip()
            contact.last_name = contact.last_name.strip()
            self.repository.add(session, contact)
            read_model = self._to_read(contact)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=contact.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="crm.contact.created",
                payload={"contact_id": str(contact.id), "organization_id": str(organization.id)},
            )
            session.commit()
        return read_model

    def get_contact(self, session: Session, contact_id: uuid.UUID) -> ContactRead:
        return self._to_read(self._get_or_404(session, contact_id))

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._get_or_404(session, contact_id)
        _check_row_version(contact, dto.row_version)
        changes = _column_values(dto, exclude={"row_version"}, exclude_unset=True)

        if changes.get("organization_id") is not None and changes["organization_id"] != contact.organization_id:
            self._get_active_organization(session, changes["organization_id"])
        elif "organization_id" in changes and changes["organization_id"] is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="organization_id is required")

        if changes.get("email") and self.repository.find_by_email(session, changes["email"], exclude_id=contact.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Contact with this email already exists")

        _reject_null_columns(contact, changes)
        before = self._to_read(contact).model_dump(mode="json")
        with store_errors(session, "update contact"):
            if changes.get("is_primary"):
                self._clear_primary(session, changes.get("organization_id") or contact.organization_id, exclude=contact.id)
            for key, value in changes.items():
                setattr(contact, key, value)
            _touch(contact, actor_user)
            session.flush()
            session.refresh(contact)
            read_model = self._to_read(contact)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=contact.id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.contact.updated",
                payload={"contact_id": str(contact.id), "changed_fields": sorted(changes)},
            )
            session.commit()
        return read_model

    def delete_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        contact = self._get_or_404(session, contact_id)
        before = self._to_read(contact).model_dump(mode="json")
        with store_errors(session, "delete contact"):
            self.repository.soft_delete(session, contact, actor_user.user_id)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=contact.id,
                action="delete",
                before=before,
                after=None,
                event_type="crm.contact.deleted",
                payload={"contact_id": str(contact.id)},
            )
            session.commit()

    def search_contacts(
        self,
        session: Session,
        *,
        query: str | None = None,
        organization_id: uuid.UUID | None = None,
        role: str | None = None,
        is_decision_maker: bool | None = None,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[ContactRead]:
        page, limit = _page_bounds(page, limit)
        stmt = self.repository.active_query().options(selectinload(Contact.organization))
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(
                or_(Contact.first_name.ilike(pattern), Contact.last_name.ilike(pattern), Contact.email.ilike(pattern))
            )
        if organization_id is not None:
            stmt = stmt.where(Contact.organization_id == organization_id)
        if role:
            stmt = stmt.where(Contact.role == role)
        if is_decision_maker is not None:
            stmt = stmt.where(Contact.is_decision_maker.is_(is_decision_maker))
        if is_active is not None:
            stmt = stmt.where(Contact.is_active.is_(is_active))

        rows, total = self.repository.paginate(
            session,
            stmt.order_by(Contact.last_name, Contact.first_name),
            page,
            limit,
        )
        return Page[ContactRead](data=[self._to_read(row) for row in rows], total=total, page=page, limit=limit)

    def get_contacts_by_organization(self, session: Session, organization_id: uuid.UUID) -> list[ContactRead]:
        if self.organizations.get(session, organization_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
        return [self._to_read(row) for row in self.repository.for_organization(session, organization_id)]

    def get_decision_makers(self, session: Session, organization_id: uuid.UUID | None = None) -> list[ContactRead]:
        stmt = self.repository.active_query().where(Contact.is_decision_maker.is_(True))
        if organization_id is not None:
            stmt = stmt.where(Contact.organization_id == organization_id)
        rows = session.scalars(stmt.order_by(Contact.last_name, Contact.first_name)).all()
        return [self._to_read(row) for row in rows]

    def create_contact_relationship(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactRelationshipCreate,
    ) -> ContactRelationshipRead:
        if contact_id == dto.related_contact_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Contact cannot have a relationship with itself",
            )
        if self.repository.get(session, contact_id) is None or self.repository.get(session, dto.related_contact_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="One or both contacts not found")

        with store_errors(session, "create contact relationship"):
            relationship = ContactRelationship(
                contact_id=contact_id,
                **_column_values(dto),
                created_by=actor_user.user_id,
            )
            session.add(relationship)
            session.flush()
            read_model = ContactRelationshipRead.model_validate(relationship)
            _emit(
                actor_user,
                entity_type="crm.contact_relationship",
                entity_id=relationship.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="crm.contact.relationship_created",
                payload={
                    "contact_id": str(contact_id),
                    "related_contact_id": str(dto.related_contact_id),
                    "relationship_type": relationship.relationship_type,
                },
            )
            session.commit()
        return read_model

    def get_contact_relationships(self, session: Session, contact_id: uuid.UUID) -> list[ContactRelationshipRead]:
        self._get_or_404(session, contact_id)
        return [
            ContactRelationshipRead.model_validate(row) for row in self.repository.relationships_for(session, contact_id)
        ]

    def get_contact_communication_history(
        self,
        session: Session,
        contact_id: uuid.UUID,
        limit: int = 50,
    ) -> list[InteractionRead]:
        self._get_or_404(session, contact_id)
        rows = self.interactions.for_contact(session, contact_id, limit=min(max(limit, 1), MAX_PAGE_SIZE))
        return [InteractionRead.model_validate(row) for row in rows]

    def get_contact_engagement_metrics(self, session: Session, contact_id: uuid.UUID) -> ContactEngagementMetrics:
        contact = self._get_or_404(session, contact_id)
        interactions = self.interactions.for_contact(session, contact.id)
        completed = sum(1 for row in interactions if row.is_completed)
        return ContactEngagementMetrics(
            contact_id=contact.id,
            total_interactions=len(interactions),
            completed_interactions=completed,
            last_interaction_date=max(
                (as_utc(row.completed_at or row.created_at) for row in interactions),
                default=None,
            ),
            by_type=dict(Counter(row.type for row in interactions)),
            completion_rate=round(completed / len(interactions) * 100, 2) if interactions else 0.0,
        )

    def merge_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        target_id: uuid.UUID,
        source_id: uuid.UUID,
    ) -> ContactRead:
        if target_id == source_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Cannot merge contact with itself")
        target = self.repository.get(session, target_id)
        source = self.repository.get(session, source_id)
        if target is None or source is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="One or both contacts not found")

        before = self._to_read(target).model_dump(mode="json")
        with store_errors(session, "merge contacts"):
            for field_name in _CONTACT_FILL_FIELDS:
                if getattr(target, field_name) is None and getattr(source, field_name) is not None:
                    setattr(target, field_name, getattr(source, field_name))
            target.notes = "\n\n".join(part for part in (target.notes, source.notes) if part) or None
            if _INFLUENCE_RANK.get(source.influence_level, 0) > _INFLUENCE_RANK.get(target.influence_level, 0):
                target.influence_level = source.influence_level
            target.is_decision_maker = target.is_decision_maker or source.is_decision_maker

            moved_interactions = self.interactions.reassign(session, "contact_id", source.id, target.id)
            moved_opportunities = self.opportunities.reassign(session, "contact_id", source.id, target.id)
            self.repository.soft_delete(session, source, actor_user.user_id, merged_into_id=target.id)
            _touch(target, actor_user)
            session.flush()
            read_model = self._to_read(target)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=target.id,
                action="merge",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.contact.merged",
                payload={
                    "target_id": str(target.id),
                    "source_id": str(source.id),
                    "moved_interactions": moved_interactions,
                    "moved_opportunities": moved_opportunities,
                },
            )
            session.commit()
        return read_model

    def _clear_primary(self, session: Session, organization_id: uuid.UUID, exclude: uuid.UUID | None = None) -> None:
        for contact in self.repository.for_organization(session, organization_id):
            if contact.is_primary and contact.id != exclude:
                contact.is_primary = False
                contact.row_version = contact.row_version + 1

    def _get_active_organization(self, session: Session, organization_id: uuid.UUID) -> Organization:
        organization = self.organizations.get(session, organization_id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
        if not organization.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Organization is not active")
        return organization

    def _get_or_404(self, session: Session, contact_id: uuid.UUID) -> Contact:
        contact = self.repository.get(session, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return contact

    def _to_read(self, contact: Contact) -> ContactRead:
        return ContactRead.model_validate(contact)


class InteractionService:
    entity_type = "crm.interaction"

    def __init__(
        self,
        repository: InteractionRepository | None = None,
        contacts: ContactRepository | None = None,
        organizations: OrganizationRepository | None = None,
        opportunities: OpportunityRepository | None = None,
    ) -> None:
        self.repository = repository or interaction_repository
        self.contacts = contacts or contact_repository
        self.organizations = organizations or organization_repository
        self.opportunities = opportunities or opportunity_repository

    def create_interaction(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: InteractionCreate,
        *,
        parent_interaction_id: uuid.UUID | None = None,
    ) -> InteractionRead:
        if dto.scheduled_at is not None and as_utc(dto.scheduled_at) <= utcnow():
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Scheduled time must be in the future",
            )
        contact_id, organization_id = self._resolve_references(
            session, dto.contact_id, dto.organization_id, dto.opportunity_id
        )

        with store_errors(session, "create interaction"):
            interaction = Interaction(
                **_column_values(dto, exclude={"contact_id", "organization_id"}),
                contact_id=contact_id,
                organization_id=organization_id,
                parent_interaction_id=parent_interaction_id,
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            self.repository.add(session, interaction)
            read_model = self._to_read(interaction)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=interaction.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="crm.interaction.created",
                payload={
                    "interaction_id": str(interaction.id),
                    "type": interaction.type,
                    "contact_id": str(contact_id) if contact_id else None,
                    "organization_id": str(organization_id) if organization_id else None,
                },
            )
            session.commit()
        return read_model

    def get_interaction(self, session: Session, interaction_id: uuid.UUID) -> InteractionRead:
        return self._to_read(self._get_or_404(session, interaction_id))

    def update_interaction(
        self,
        session: Session,
        actor_user: ActorUser,
        interaction_id: uuid.UUID,
        dto: InteractionUpdate,
    ) -> InteractionRead:
        interaction = self._get_or_404(session, interaction_id)
        _check_row_version(interaction, dto.row_version)
        changes = _column_values(dto, exclude={"row_version"}, exclude_unset=True)
        _reject_null_columns(interaction, changes)

        if changes.get("scheduled_at") is not None and as_utc(changes["scheduled_at"]) <= utcnow():
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Scheduled time must be in the future",
            )
        if {"contact_id", "organization_id", "opportunity_id"} & set(changes):
            contact_id, organization_id = self._resolve_references(
                session,
                changes.get("contact_id", interaction.contact_id),
                changes.get("organization_id", interaction.organization_id),
                changes.get("opportunity_id", interaction.opportunity_id),
            )
            changes["contact_id"] = contact_id
            changes["organization_id"] = organization_id
        if changes.get("completed_at") is not None:
            changes["is_completed"] = True

        before = self._to_read(interaction).model_dump(mode="json")
        with store_errors(session, "update interaction"):
            for key, value in changes.items():
                setattr(interaction, key, value)
            _touch(interaction, actor_user)
            session.flush()
            session.refresh(interaction)
            read_model = self._to_read(interaction)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=interaction.id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.interaction.updated",
                payload={"interaction_id": str(interaction.id), "changed_fields": sorted(changes)},
            )
            session.commit()
        return read_model

    def delete_interaction(self, session: Session, actor_user: ActorUser, interaction_id: uuid.UUID) -> None:
        interaction = self._get_or_404(session, interaction_id)
        before = self._to_read(interaction).model_dump(mode="json")
        with store_errors(session, "delete interaction"):
            self.repository.soft_delete(session, interaction, actor_user.user_id)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=interaction.id,
                action="delete",
                before=before,
                after=None,
                event_type="crm.interaction.deleted",
                payload={"interaction_id": str(interaction.id)},
            )
            session.commit()

    def search_interactions(
        self,
        session: Session,
        *,
        type: str | None = None,
        contact_id: uuid.UUID | None = None,
        organization_id: uuid.UUID | None = None,
        is_completed: bool | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[InteractionRead]:
        page, limit = _page_bounds(page, limit)
        stmt = self.repository.active_query()
        if type:
            stmt = stmt.where(Interaction.type == type)
        if contact_id is not None:
            stmt = stmt.where(Interaction.contact_id == contact_id)
        if organization_id is not None:
            stmt = stmt.where(Interaction.organization_id == organization_id)
        if is_completed is not None:
            stmt = stmt.where(Interaction.is_completed.is_(is_completed))
        if start is not None:
            stmt = stmt.where(Interaction.created_at >= start)
        if end is not None:
            stmt = stmt.where(Interaction.created_at <= end)

        rows, total = self.repository.paginate(session, stmt.order_by(Interaction.created_at.desc()), page, limit)
        return Page[InteractionRead](data=[self._to_read(row) for row in rows], total=total, page=page, limit=limit)

    def get_interactions_by_contact(self, session: Session, contact_id: uuid.UUID) -> list[InteractionRead]:
        if self.contacts.get(session, contact_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return [self._to_read(row) for row in self.repository.for_contact(session, contact_id)]

    def get_interactions_by_organization(self, session: Session, organization_id: uuid.UUID) -> list[InteractionRead]:
        if self.organizations.get(session, organization_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
        return [self._to_read(row) for row in self.repository.for_organization(session, organization_id)]

    def get_scheduled_interactions(self, session: Session, user_id: str | None = None) -> list[InteractionRead]:
        return [self._to_read(row) for row in self.repository.scheduled_from(session, utcnow(), created_by=user_id)]

    def complete_interaction(
        self,
        session: Session,
        actor_user: ActorUser,
        interaction_id: uuid.UUID,
        outcome: str,
        next_steps: str | None = None,
    ) -> InteractionRead:
        interaction = self._get_or_404(session, interaction_id)
        if interaction.is_cancelled:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Cancelled interactions cannot be completed")
        if interaction.is_completed:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Interaction is already completed")

        before = self._to_read(interaction).model_dump(mode="json")
        with store_errors(session, "complete interaction"):
            interaction.is_completed = True
            interaction.completed_at = utcnow()
            interaction.outcome = outcome
            interaction.next_steps = next_steps
            _touch(interaction, actor_user)
            follow_up: Interaction | None = None
            if next_steps:
                follow_up = Interaction(
                    type="follow_up",
                    subject=f"Follow-up: {interaction.subject}",
                    description=next_steps,
                    contact_id=interaction.contact_id,
                    organization_id=interaction.organization_id,
                    opportunity_id=interaction.opportunity_id,
                    priority=interaction.priority,
                    parent_interaction_id=interaction.id,
                    created_by=actor_user.user_id,
                    updated_by=actor_user.user_id,
                )
                self.repository.add(session, follow_up)
            session.flush()
            read_model = self._to_read(interaction)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=interaction.id,
                action="complete",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.interaction.completed",
                payload={
                    "interaction_id": str(interaction.id),
                    "follow_up_id": str(follow_up.id) if follow_up is not None else None,
                },
            )
            session.commit()
        return read_model

    def cancel_interaction(
        self,
        session: Session,
        actor_user: ActorUser,
        interaction_id: uuid.UUID,
        reason: str,
    ) -> InteractionRead:
        interaction = self._get_or_404(session, interaction_id)
        if interaction.is_completed:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Completed interactions cannot be cancelled")
        if interaction.is_cancelled:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Interaction is already cancelled")

        before = self._to_read(interaction).model_dump(mode="json")
        with store_errors(session, "cancel interaction"):
            interaction.is_cancelled = True
            interaction.cancel_reason = reason
            interaction.completed_at = utcnow()
            _touch(interaction, actor_user)
            session.flush()
            read_model = self._to_read(interaction)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=interaction.id,
                action="cancel",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.interaction.cancelled",
                payload={"interaction_id": str(interaction.id), "reason": reason},
            )
            session.commit()
        return read_model

    def reschedule_interaction(
        self,
        session: Session,
        actor_user: ActorUser,
        interaction_id: uuid.UUID,
        scheduled_at: datetime,
    ) -> InteractionRead:
        interaction = self._get_or_404(session, interaction_id)
        if interaction.is_completed or interaction.is_cancelled:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Completed or cancelled interactions cannot be rescheduled",
            )
        if as_utc(scheduled_at) <= utcnow():
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Rescheduled time must be in the future",
            )

        before = self._to_read(interaction).model_dump(mode="json")
        with store_errors(session, "reschedule interaction"):
            interaction.scheduled_at = scheduled_at
            _touch(interaction, actor_user)
            session.flush()
            read_model = self._to_read(interaction)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=interaction.id,
                action="reschedule",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.interaction.rescheduled",
                payload={"interaction_id": str(interaction.id), "scheduled_at": scheduled_at.isoformat()},
            )
            session.commit()
        return read_model

    def get_interaction_chain(self, session: Session, interaction_id: uuid.UUID) -> list[InteractionRead]:
        interaction = self._get_or_404(session, interaction_id)

        root = interaction
        seen = {root.id}
        while root.parent_interaction_id is not None:
            parent = self.repository.get(session, root.parent_interaction_id)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            root = parent

        chain = [root]
        frontier = [root.id]
        visited = {root.id}
        while frontier:
            children = session.scalars(
                self.repository.active_query()
                .where(Interaction.parent_interaction_id.in_(frontier))
                .order_by(Interaction.created_at)
            ).all()
            frontier = []
            for child in children:
                if child.id in visited:
                    continue
                visited.add(child.id)
                chain.append(child)
                frontier.append(child.id)
        return [self._to_read(row) for row in chain]

    def get_interaction_analytics(self, session: Session) -> InteractionAnalytics:
        interactions = list(session.scalars(self.repository.active_query()).all())
        now = utcnow()
        completed = sum(1 for row in interactions if row.is_completed)
        cancelled = sum(1 for row in interactions if row.is_cancelled)
        overdue = sum(
            1
            for row in interactions
            if row.scheduled_at is not None
            and as_utc(row.scheduled_at) < now
            and not row.is_completed
            and not row.is_cancelled
        )
        durations = [row.duration_minutes for row in interactions if row.duration_minutes is not None]
        return InteractionAnalytics(
            total_interactions=len(interactions),
            by_type=dict(Counter(row.type for row in interactions)),
            completed=completed,
            cancelled=cancelled,
            pending=len(interactions) - completed - cancelled,
            overdue=overdue,
            completion_rate=round(completed / len(interactions) * 100, 2) if interactions else 0.0,
            average_duration_minutes=round(sum(durations) / len(durations), 2) if durations else 0.0,
        )

    def _resolve_references(
        self,
        session: Session,
        contact_id: uuid.UUID | None,
        organization_id: uuid.UUID | None,
        opportunity_id: uuid.UUID | None,
    ) -> tuple[uuid.UUID | None, uuid.UUID | None]:
        if contact_id is not None:
            contact = self.contacts.get(session, contact_id)
            if contact is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
            if organization_id is None:
                organization_id = contact.organization_id
            elif contact.organization_id != organization_id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="Contact does not belong to the specified organization",
                )
        if organization_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="contact_id or organization_id is required",
            )
        if self.organizations.get(session, organization_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
        if opportunity_id is not None and self.opportunities.get(session, opportunity_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Opportunity not found")
        return contact_id, organization_id

    def _get_or_404(self, session: Session, interaction_id: uuid.UUID) -> Interaction:
        interaction = self.repository.get(session, interaction_id)
        if interaction is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Interaction not found")
        return interaction

    def _to_read(self, interaction: Interaction) -> InteractionRead:
        return InteractionRead.model_validate(interaction)


def _period_bounds(period: ForecastPeriod, today: date) -> tuple[date, date]:
    if period == "month":
        return today.replace(day=1), today.replace(day=monthrange(today.year, today.month)[1])
    if period == "quarter":
        first_month = 3 * ((today.month - 1) // 3) + 1
        last_month = first_month + 2
        return date(today.year, first_month, 1), date(today.year, last_month, monthrange(today.year, last_month)[1])
    if period == "year":
        return date(today.year, 1, 1), date(today.year, 12, 31)
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unsupported forecast period: {period}")


class OpportunityService:
    entity_type = "crm.opportunity"

    def __init__(
        self,
        repository: OpportunityRepository | None = None,
        organizations: OrganizationRepository | None = None,
        contacts: ContactRepository | None = None,
    ) -> None:
        self.repository = repository or opportunity_repository
        self.organizations = organizations or organization_repository
        self.contacts = contacts or contact_repository

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        self._validate_close_date(dto.expected_close_date)
        self._validate_value(dto.value)
        organization = self.organizations.get(session, dto.organization_id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
        if dto.contact_id is not None:
            self._validate_contact(session, dto.contact_id, organization.id)

        stage = OpportunityStage(dto.stage)
        with store_errors(session, "create opportunity"):
            opportunity = Opportunity(
                **_column_values(dto, exclude={"stage"}),
                stage=stage.value,
                probability=stage.probability,
                actual_close_date=utcnow().date() if stage.is_closed else None,
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            if opportunity.assigned_user_id is None:
                opportunity.assigned_user_id = actor_user.user_id
            self.repository.add(session, opportunity)
            self.repository.append_history(
                session,
                opportunity.id,
                from_stage=None,
                to_stage=stage.value,
                reason="Opportunity created",
                changed_by=actor_user.user_id,
            )
            read_model = self._to_read(session, opportunity)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=opportunity.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="crm.opportunity.created",
                payload={
                    "opportunity_id": str(opportunity.id),
                    "organization_id": str(organization.id),
                    "stage": stage.value,
                    "value": str(opportunity.value),
                },
            )
            session.commit()
        observe_stage_transition(None, stage.value)
        return read_model

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        return self._to_read(session, self._get_or_404(session, opportunity_id))

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = self._get_or_404(session, opportunity_id)
        _check_row_version(opportunity, dto.row_version)
        changes = _column_values(dto, exclude={"row_version", "stage", "stage_reason"}, exclude_unset=True)
        _reject_null_columns(opportunity, changes)

        if "expected_close_date" in changes and changes["expected_close_date"] != opportunity.expected_close_date:
            self._validate_close_date(changes["expected_close_date"])
        if "value" in changes:
            self._validate_value(changes["value"])
        if changes.get("contact_id") is not None:
            self._validate_contact(session, changes["contact_id"], opportunity.organization_id)

        target_stage = OpportunityStage(dto.stage) if dto.stage is not None else None
        if target_stage is not None and target_stage.value != opportunity.stage:
            self._ensure_transition_allowed(opportunity, target_stage)
        else:
            target_stage = None

        before = self._to_read(session, opportunity).model_dump(mode="json")
        with store_errors(session, "update opportunity"):
            for key, value in changes.items():
                setattr(opportunity, key, value)
            from_stage = opportunity.stage
            if target_stage is not None:
                self._apply_transition(session, actor_user, opportunity, target_stage, dto.stage_reason)
            _touch(opportunity, actor_user)
            session.flush()
            read_model = self._to_read(session, opportunity)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=opportunity.id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="crm.opportunity.updated",
                payload={"opportunity_id": str(opportunity.id), "changed_fields": sorted(changes)},
            )
            if target_stage is not None:
                self._emit_stage_change(actor_user, opportunity, from_stage, target_stage, dto.stage_reason)
            session.commit()
        return read_model

    def transition_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        stage: OpportunityStage | str,
        reason: str | None = None,
    ) -> OpportunityRead:
        opportunity = self._get_or_404(session, opportunity_id)
        target_stage = OpportunityStage(stage)
        self._ensure_transition_allowed(opportunity, target_stage)

        before = self._to_read(session, opportunity).model_dump(mode="json")
        from_stage = opportunity.stage
        with tracer.start_as_current_span("crm.opportunity.transition_stage") as span:
            span.set_attribute("opportunity_id", str(opportunity.id))
            span.set_attribute("from_stage", from_stage)
            span.set_attribute("to_stage", target_stage.value)
            with store_errors(session, "transition opportunity stage"):
                self._apply_transition(session, actor_user, opportunity, target_stage, reason)
                _touch(opportunity, actor_user)
                session.flush()
                read_model = self._to_read(session, opportunity)
                audit.record(
                    actor_user_id=actor_user.user_id,
                    entity_type=self.entity_type,
                    entity_id=str(opportunity.id),
                    action="transition_stage",
                    before=before,
                    after=read_model.model_dump(mode="json"),
                    correlation_id=actor_user.correlation_id,
                )
                self._emit_stage_change(actor_user, opportunity, from_stage, target_stage, reason)
                session.commit()
        return read_model

    def delete_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        opportunity = self._get_or_404(session, opportunity_id)
        before = self._to_read(session, opportunity).model_dump(mode="json")
        with store_errors(session, "delete opportunity"):
            self.repository.soft_delete(session, opportunity, actor_user.user_id)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=opportunity.id,
                action="delete",
                before=before,
                after=None,
                event_type="crm.opportunity.deleted",
                payload={"opportunity_id": str(opportunity.id)},
            )
            session.commit()

    def search_opportunities(
        self,
        session: Session,
        *,
        query: str | None = None,
        stage: str | None = None,
        organization_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        assigned_user_id: str | None = None,
        min_value: Decimal | None = None,
        max_value: Decimal | None = None,
        close_date_from: date | None = None,
        close_date_to: date | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[OpportunityRead]:
        page, limit = _page_bounds(page, limit)
        stmt = self.repository.active_query()
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(or_(Opportunity.name.ilike(pattern), Opportunity.description.ilike(pattern)))
        if stage:
            stmt = stmt.where(Opportunity.stage == stage)
        if organization_id is not None:
            stmt = stmt.where(Opportunity.organization_id == organization_id)
        if contact_id is not None:
            stmt = stmt.where(Opportunity.contact_id == contact_id)
        if assigned_user_id:
            stmt = stmt.where(Opportunity.assigned_user_id == assigned_user_id)
        if min_value is not None:
            stmt = stmt.where(Opportunity.value >= min_value)
        if max_value is not None:
            stmt = stmt.where(Opportunity.value <= max_value)
        if close_date_from is not None:
            stmt = stmt.where(Opportunity.expected_close_date >= close_date_from)
        if close_date_to is not None:
            stmt = stmt.where(Opportunity.expected_close_date <= close_date_to)

        stmt = stmt.order_by(
            Opportunity.expected_close_date.is_(None),
            Opportunity.expected_close_date.asc(),
            Opportunity.created_at.asc(),
        )
        rows, total = self.repository.paginate(session, stmt, page, limit)
        return Page[OpportunityRead](
            data=[self._to_read(session, row, with_history=False) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    def get_opportunities_by_stage(self, session: Session, stage: OpportunityStage | str) -> list[OpportunityRead]:
        stmt = self.repository.active_query().where(Opportunity.stage == OpportunityStage(stage).value)
        rows = session.scalars(stmt.order_by(Opportunity.expected_close_date)).all()
        return [self._to_read(session, row, with_history=False) for row in rows]

    def get_opportunities_by_user(self, session: Session, user_id: str) -> list[OpportunityRead]:
        stmt = self.repository.active_query().where(Opportunity.assigned_user_id == user_id)
        rows = session.scalars(stmt.order_by(Opportunity.expected_close_date)).all()
        return [self._to_read(session, row, with_history=False) for row in rows]

    def get_opportunities_closing_this_month(self, session: Session) -> list[OpportunityRead]:
        start, end = _period_bounds("month", utcnow().date())
        stmt = self.repository.active_query().where(
            Opportunity.expected_close_date >= start,
            Opportunity.expected_close_date <= end,
            Opportunity.stage.not_in([stage.value for stage in CLOSED_STAGES]),
        )
        rows = session.scalars(stmt.order_by(Opportunity.expected_close_date)).all()
        return [self._to_read(session, row, with_history=False) for row in rows]

    def get_opportunity_analytics(self, session: Session) -> OpportunityAnalytics:
        opportunities = list(session.scalars(self.repository.active_query()).all())
        by_stage: dict[str, StageBreakdown] = {}
        for stage in OpportunityStage:
            rows = [row for row in opportunities if row.stage == stage.value]
            by_stage[stage.value] = StageBreakdown(
                count=len(rows),
                value=sum((Decimal(row.value) for row in rows), Decimal("0")),
            )

        won = [row for row in opportunities if row.stage == OpportunityStage.CLOSED_WON.value]
        lost_count = by_stage[OpportunityStage.CLOSED_LOST.value].count
        total_value = sum((Decimal(row.value) for row in opportunities), Decimal("0"))
        cycles = [
            (row.actual_close_date - as_utc(row.created_at).date()).days
            for row in won
            if row.actual_close_date is not None
        ]
        return OpportunityAnalytics(
            total_opportunities=len(opportunities),
            total_value=total_value,
            by_stage=by_stage,
            won_count=len(won),
            lost_count=lost_count,
            conversion_rate=round(len(won) / len(opportunities) * 100, 2) if opportunities else 0.0,
            average_deal_size=(
                (total_value / len(opportunities)).quantize(Decimal("0.01")) if opportunities else Decimal("0")
            ),
            average_sales_cycle_days=round(sum(cycles) / len(cycles), 2) if cycles else 0.0,
        )

    def get_sales_forecast(self, session: Session, period: ForecastPeriod = "month") -> SalesForecast:
        today = utcnow().date()
        start, end = _period_bounds(period, today)
        stmt = self.repository.active_query().where(
            Opportunity.expected_close_date >= start,
            Opportunity.expected_close_date <= end,
            Opportunity.stage.not_in([stage.value for stage in CLOSED_STAGES]),
        )
        opportunities = list(session.scalars(stmt).all())
        risk_horizon = today + timedelta(days=7)

        def _total(rows: list[Opportunity]) -> Decimal:
            return sum((Decimal(row.value) for row in rows), Decimal("0"))

        weighted = sum(
            (Decimal(row.value) * Decimal(row.probability) / Decimal(100) for row in opportunities),
            Decimal("0"),
        )
        return SalesForecast(
            period=period,
            period_start=start,
            period_end=end,
            total_pipeline=_total(opportunities),
            weighted_pipeline=weighted.quantize(Decimal("0.01")),
            best_case=_total([row for row in opportunities if row.probability >= 75]),
            worst_case=_total([row for row in opportunities if row.probability <= 25]),
            closing_this_period=_total([row for row in opportunities if row.probability >= 50]),
            at_risk=_total(
                [
                    row
                    for row in opportunities
                    if row.probability < 50
                    and row.expected_close_date is not None
                    and row.expected_close_date <= risk_horizon
                ]
            ),
            opportunity_count=len(opportunities),
        )

    def clone_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> OpportunityRead:
        original = self._get_or_404(session, opportunity_id)
        stage = OpportunityStage.PROSPECTING
        with store_errors(session, "clone opportunity"):
            clone = Opportunity(
                name=f"{original.name} (Copy)",
                organization_id=original.organization_id,
                contact_id=original.contact_id,
                stage=stage.value,
                probability=stage.probability,
                value=original.value,
                expected_close_date=utcnow().date() + timedelta(days=30),
                description=original.description,
                source=original.source,
                assigned_user_id=actor_user.user_id,
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            self.repository.add(session, clone)
            self.repository.append_history(
                session,
                clone.id,
                from_stage=None,
                to_stage=stage.value,
                reason=f"Cloned from {original.id}",
                changed_by=actor_user.user_id,
            )
            read_model = self._to_read(session, clone)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=clone.id,
                action="clone",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="crm.opportunity.created",
                payload={"opportunity_id": str(clone.id), "cloned_from": str(original.id)},
            )
            session.commit()
        return read_model

    def _ensure_transition_allowed(self, opportunity: Opportunity, target_stage: OpportunityStage) -> None:
        if OpportunityStage(opportunity.stage).is_closed:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Opportunity is closed as {opportunity.stage} and cannot change stage",
            )
        if opportunity.stage == target_stage.value:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Opportunity is already in stage {target_stage.value}",
            )

    def _apply_transition(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity: Opportunity,
        target_stage: OpportunityStage,
        reason: str | None,
    ) -> None:
        from_stage = opportunity.stage
        opportunity.stage = target_stage.value
        opportunity.probability = probability_for_stage(target_stage)
        if target_stage.is_closed:
            opportunity.actual_close_date = utcnow().date()
            opportunity.close_reason = reason
        self.repository.append_history(
            session,
            opportunity.id,
            from_stage=from_stage,
            to_stage=target_stage.value,
            reason=reason,
            changed_by=actor_user.user_id,
        )
        observe_stage_transition(from_stage, target_stage.value)
        logger.info(
            "opportunity.stage_changed",
            extra={"entity_id": str(opportunity.id), "from_stage": from_stage, "to_stage": target_stage.value},
        )

    def _emit_stage_change(
        self,
        actor_user: ActorUser,
        opportunity: Opportunity,
        from_stage: str,
        target_stage: OpportunityStage,
        reason: str | None,
    ) -> None:
        payload = {
            "opportunity_id": str(opportunity.id),
            "from_stage": from_stage,
            "to_stage": target_stage.value,
            "probability": opportunity.probability,
            "reason": reason,
        }
        event_types = ["crm.opportunity.stage_changed"]
        if target_stage.is_closed:
            event_types.append(f"crm.opportunity.{target_stage.value}")
        for event_type in event_types:
            events.emit(
                event_type,
                actor_user_id=actor_user.user_id,
                payload=payload,
                correlation_id=actor_user.correlation_id,
            )

    def _validate_close_date(self, expected_close_date: date | None) -> None:
        if expected_close_date is not None and expected_close_date <= utcnow().date():
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Expected close date must be in the future",
            )

    def _validate_value(self, value: Decimal | None) -> None:
        if value is None or value <= 0:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Opportunity value must be positive",
            )

    def _validate_contact(self, session: Session, contact_id: uuid.UUID, organization_id: uuid.UUID) -> Contact:
        contact = self.contacts.get(session, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        if contact.organization_id != organization_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Contact does not belong to the specified organization",
            )
        return contact

    def _get_or_404(self, session: Session, opportunity_id: uuid.UUID) -> Opportunity:
        opportunity = self.repository.get(session, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Opportunity not found")
        return opportunity

    def _to_read(self, session: Session, opportunity: Opportunity, *, with_history: bool = True) -> OpportunityRead:
        read_model = OpportunityRead.model_validate(opportunity)
        if with_history:
            read_model.stage_history = [
                StageHistoryRead.model_validate(entry) for entry in self.repository.history(session, opportunity.id)
            ]
        else:
            read_model.stage_history = []
        return read_model

