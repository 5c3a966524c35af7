from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select, update
from sqlalchemy.orm import Session

from foodcrm.core.database import Base, utcnow
from foodcrm.crm.models import (
    Contact,
    ContactRelationship,
    Interaction,
    Opportunity,
    OpportunityStageHistory,
    Organization,
)

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Soft-delete aware access to one table. Services never query models directly for lookups by id."""

    model: type[ModelT]

    def get(self, session: Session, entity_id: uuid.UUID, *, include_deleted: bool = False) -> ModelT | None:
        stmt = select(self.model).where(self.model.id == entity_id)
        if not include_deleted:
            stmt = stmt.where(self.model.deleted_at.is_(None))
        return session.scalar(stmt)

    def get_many(self, session: Session, entity_ids: list[uuid.UUID]) -> list[ModelT]:
        if not entity_ids:
            return []
        stmt = select(self.model).where(self.model.id.in_(entity_ids), self.model.deleted_at.is_(None))
        return list(session.scalars(stmt).all())

    def active_query(self) -> Select[Any]:
        return select(self.model).where(self.model.deleted_at.is_(None))

    def add(self, session: Session, entity: ModelT) -> ModelT:
        session.add(entity)
        session.flush()
        session.refresh(entity)
        return entity

    def soft_delete(self, session: Session, entity: ModelT, actor_user_id: str, **extra: Any) -> ModelT:
        entity.is_active = False
        entity.deleted_at = utcnow()
        entity.deleted_by = actor_user_id
        entity.updated_by = actor_user_id
        entity.row_version = entity.row_version + 1
        for key, value in extra.items():
            setattr(entity, key, value)
        session.flush()
        return entity

    def paginate(self, session: Session, stmt: Select[Any], page: int, limit: int) -> tuple[list[ModelT], int]:
        total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
        rows = session.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
        return list(rows), int(total)


class OrganizationRepository(BaseRepository[Organization]):
    model = Organization

    def parent_id_of(self, session: Session, organization_id: uuid.UUID) -> uuid.UUID | None:
        return session.scalar(select(Organization.parent_organization_id).where(Organization.id == organization_id))

    def exists(self, session: Session, organization_id: uuid.UUID) -> bool:
        return session.scalar(select(Organization.id).where(Organization.id == organization_id)) is not None

    def find_by_name(
        self,
        session: Session,
        name: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> list[Organization]:
        stmt = self.active_query().where(func.lower(Organization.name) == name.strip().lower())
        if exclude_id is not None:
            stmt = stmt.where(Organization.id != exclude_id)
        return list(session.scalars(stmt).all())

    def find_children(self, session: Session, parent_id: uuid.UUID) -> list[Organization]:
        stmt = self.active_query().where(Organization.parent_organization_id == parent_id).order_by(Organization.name)
        return list(session.scalars(stmt).all())

    def all_active(self, session: Session) -> list[Organization]:
        return list(session.scalars(self.active_query().order_by(Organization.name)).all())


class ContactRepository(BaseRepository[Contact]):
    model = Contact

    def find_by_email(self, session: Session, email: str, *, exclude_id: uuid.UUID | None = None) -> Contact | None:
        stmt = self.active_query().where(func.lower(Contact.email) == email.strip().lower())
        if exclude_id is not None:
            stmt = stmt.where(Contact.id != exclude_id)
        return session.scalars(stmt.limit(1)).first()

    def for_organization(self, session: Session, organization_id: uuid.UUID) -> list[Contact]:
        stmt = (
            self.active_query()
            .where(Contact.organization_id == organization_id)
            .order_by(Contact.last_name, Contact.first_name)
        )
        return list(session.scalars(stmt).all())

    def relationships_for(self, session: Session, contact_id: uuid.UUID) -> list[ContactRelationship]:
        stmt = (
            select(ContactRelationship)
            .where(
                (ContactRelationship.contact_id == contact_id) | (ContactRelationship.related_contact_id == contact_id)
            )
            .order_by(ContactRelationship.created_at)
        )
        return list(session.scalars(stmt).all())

    def reassign_organization(self, session: Session, source_id: uuid.UUID, target_id: uuid.UUID) -> int:
        result = session.execute(
            update(Contact)
            .where(Contact.organization_id == source_id, Contact.deleted_at.is_(None))
            .values(organization_id=target_id, updated_at=utcnow())
        )
        return int(result.rowcount or 0)


class InteractionRepository(BaseRepository[Interaction]):
    model = Interaction

    def for_contact(self, session: Session, contact_id: uuid.UUID, limit: int | None = None) -> list[Interaction]:
        stmt = self.active_query().where(Interaction.contact_id == contact_id).order_by(Interaction.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).all())

    def for_organization(self, session: Session, organization_id: uuid.UUID) -> list[Interaction]:
        stmt = (
            self.active_query()
            .where(Interaction.organization_id == organization_id)
            .order_by(Interaction.created_at.desc())
        )
        return list(session.scalars(stmt).all())

    def scheduled_from(self, session: Session, moment: datetime, created_by: str | None = None) -> list[Interaction]:
        stmt = self.active_query().where(
            Interaction.scheduled_at.is_not(None),
            Interaction.scheduled_at >= moment,
            Interaction.is_completed.is_(False),
            Interaction.is_cancelled.is_(False),
        )
        if created_by is not None:
            stmt = stmt.where(Interaction.created_by == created_by)
        return list(session.scalars(stmt.order_by(Interaction.scheduled_at.asc())).all())

    def reassign(self, session: Session, column: str, source_id: uuid.UUID, target_id: uuid.UUID) -> int:
        attribute = getattr(Interaction, column)
        result = session.execute(
            update(Interaction).where(attribute == source_id).values({column: target_id, "updated_at": utcnow()})
        )
        return int(result.rowcount or 0)


class OpportunityRepository(BaseRepository[Opportunity]):
    model = Opportunity

    def for_organization(self, session: Session, organization_id: uuid.UUID) -> list[Opportunity]:
        stmt = self.active_query().where(Opportunity.organization_id == organization_id)
        return list(session.scalars(stmt).all())

    def next_history_sequence(self, session: Session, opportunity_id: uuid.UUID) -> int:
        current = session.scalar(
            select(func.max(OpportunityStageHistory.sequence)).where(
                OpportunityStageHistory.opportunity_id == opportunity_id
            )
        )
        return int(current or 0) + 1

    def append_history(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        *,
        from_stage: str | None,
        to_stage: str,
        reason: str | None,
        changed_by: str | None,
    ) -> OpportunityStageHistory:
        entry = OpportunityStageHistory(
            opportunity_id=opportunity_id,
            sequence=self.next_history_sequence(session, opportunity_id),
            from_stage=from_stage,
            to_stage=to_stage,
            reason=reason,
            changed_by=changed_by,
            changed_at=utcnow(),
        )
        session.add(entry)
        session.flush()
        return entry

    def history(self, session: Session, opportunity_id: uuid.UUID) -> list[OpportunityStageHistory]:
        stmt = (
            select(OpportunityStageHistory)
            .where(OpportunityStageHistory.opportunity_id == opportunity_id)
            .order_by(OpportunityStageHistory.sequence)
        )
        return list(session.scalars(stmt).all())

    def reassign(self, session: Session, column: str, source_id: uuid.UUID, target_id: uuid.UUID) -> int:
        attribute = getattr(Opportunity, column)
        result = session.execute(
            update(Opportunity).where(attribute == source_id).values({column: target_id, "updated_at": utcnow()})
        )
        return int(result.rowcount or 0)


organization_repository = OrganizationRepository()
contact_repository = ContactRepository()
interaction_repository = InteractionRepository()
opportunity_repository = OpportunityRepository()
