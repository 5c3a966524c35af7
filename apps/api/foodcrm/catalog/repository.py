from __future__ import annotations

import uuid

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, selectinload

from foodcrm.catalog.models import Product, ProductCategory, ProductInventory, ProductPricingTier
from foodcrm.crm.repositories import BaseRepository


class ProductRepository(BaseRepository[Product]):
    model = Product

    def get_detailed(self, session: Session, product_id: uuid.UUID) -> Product | None:
        stmt = (
            self.active_query()
            .where(Product.id == product_id)
            .options(
                selectinload(Product.category),
                selectinload(Product.pricing_tiers),
                selectinload(Product.inventory),
            )
        )
        return session.scalar(stmt)

    def find_by_sku(self, session: Session, sku: str, *, exclude_id: uuid.UUID | None = None) -> Product | None:
        # soft-deleted rows keep their sku, so the lookup spans them too
        stmt = select(Product).where(func.upper(Product.sku) == sku.strip().upper())
        if exclude_id is not None:
            stmt = stmt.where(Product.id != exclude_id)
        return session.scalars(stmt.limit(1)).first()

    def for_category(self, session: Session, category_id: uuid.UUID) -> list[Product]:
        stmt = self.active_query().where(Product.category_id == category_id, Product.is_active.is_(True))
        return list(session.scalars(stmt.order_by(Product.name)).all())

    def for_supplier(self, session: Session, supplier: str) -> list[Product]:
        stmt = self.active_query().where(func.lower(Product.supplier) == supplier.strip().lower())
        return list(session.scalars(stmt.order_by(Product.name)).all())


class CategoryRepository:
    def get(self, session: Session, category_id: uuid.UUID) -> ProductCategory | None:
        return session.get(ProductCategory, category_id)

    def find_by_name(self, session: Session, name: str) -> ProductCategory | None:
        return session.scalar(select(ProductCategory).where(func.lower(ProductCategory.name) == name.strip().lower()))

    def list_with_counts(self, session: Session) -> list[tuple[ProductCategory, int]]:
        counts = (
            select(Product.category_id, func.count(Product.id).label("product_count"))
            .where(Product.deleted_at.is_(None), Product.is_active.is_(True))
            .group_by(Product.category_id)
            .subquery()
        )
        stmt = (
            select(ProductCategory, func.coalesce(counts.c.product_count, 0))
            .outerjoin(counts, counts.c.category_id == ProductCategory.id)
            .where(ProductCategory.is_active.is_(True))
            .order_by(ProductCategory.name)
        )
        return [(category, int(count)) for category, count in session.execute(stmt).all()]


class InventoryRepository:
    def for_product(self, session: Session, product_id: uuid.UUID) -> ProductInventory | None:
        return session.scalar(select(ProductInventory).where(ProductInventory.product_id == product_id))


class PricingTierRepository:
    def for_product(self, session: Session, product_id: uuid.UUID) -> list[ProductPricingTier]:
        stmt = (
            select(ProductPricingTier)
            .where(ProductPricingTier.product_id == product_id)
            .order_by(ProductPricingTier.min_quantity, ProductPricingTier.customer_segment)
        )
        return list(session.scalars(stmt).all())

    def clear(self, session: Session, product_id: uuid.UUID) -> None:
        session.execute(delete(ProductPricingTier).where(ProductPricingTier.product_id == product_id))


product_repository = ProductRepository()
category_repository = CategoryRepository()
inventory_repository = InventoryRepository()
pricing_tier_repository = PricingTierRepository()
