from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from foodcrm.catalog.models import Product, ProductCategory, ProductInventory, ProductPricingTier
from foodcrm.catalog.repository import (
    CategoryRepository,
    InventoryRepository,
    PricingTierRepository,
    ProductRepository,
    category_repository,
    inventory_repository,
    pricing_tier_repository,
    product_repository,
)
from foodcrm.catalog.schemas import (
    CategoryCreate,
    CategoryRead,
    InventoryRead,
    InventoryUpdate,
    PricingTierInput,
    PricingTierRead,
    ProductAnalytics,
    ProductBulkUpdateRequest,
    ProductCreate,
    ProductDetailRead,
    ProductRead,
    ProductUpdate,
)
from foodcrm.core.auth import ActorUser
from foodcrm.core.database import utcnow
from foodcrm.core.errors import store_errors
from foodcrm.crm.schemas import Page
from foodcrm.crm.service import _check_row_version, _column_values, _emit, _page_bounds, _touch

logger = logging.getLogger("foodcrm.catalog")

_CENT = Decimal("0.01")


@dataclass(slots=True)
class ProductService:
    entity_type = "catalog.product"

    product_repository: ProductRepository = product_repository
    category_repository: CategoryRepository = category_repository
    inventory_repository: InventoryRepository = inventory_repository
    pricing_repository: PricingTierRepository = pricing_tier_repository

    def create_product(self, session: Session, actor_user: ActorUser, dto: ProductCreate) -> ProductRead:
        if self.product_repository.find_by_sku(session, dto.sku):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product with this SKU already exists")
        if dto.category_id is not None:
            self._active_category_or_error(session, dto.category_id)

        with store_errors(session, "create product"):
            product = Product(
                **_column_values(dto),
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            self.product_repository.add(session, product)
            read_model = ProductRead.model_validate(product)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=product.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="catalog.product.created",
                payload={"product_id": str(product.id), "sku": product.sku},
            )
            session.commit()
        logger.info("product.created", extra={"entity_id": str(product.id)})
        return read_model

    def get_product(self, session: Session, product_id: uuid.UUID) -> ProductDetailRead:
        product = self.product_repository.get_detailed(session, product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        return ProductDetailRead(
            **ProductRead.model_validate(product).model_dump(),
            category=CategoryRead.model_validate(product.category) if product.category is not None else None,
            pricing_tiers=[PricingTierRead.model_validate(tier) for tier in product.pricing_tiers],
            inventory=InventoryRead.model_validate(product.inventory) if product.inventory is not None else None,
        )

    def update_product(
        self,
        session: Session,
        actor_user: ActorUser,
        product_id: uuid.UUID,
        dto: ProductUpdate,
    ) -> ProductRead:
        product = self._get_or_404(session, product_id)
        _check_row_version(product, dto.row_version)
        changes = _column_values(dto, exclude={"row_version"}, exclude_unset=True)

        for required in ("sku", "name", "unit_price", "is_active"):
            if required in changes and changes[required] is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"{required} must not be null",
                )
        if "sku" in changes and changes["sku"] != product.sku:
            if self.product_repository.find_by_sku(session, changes["sku"], exclude_id=product.id):
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product with this SKU already exists")
        if changes.get("category_id") is not None and changes["category_id"] != product.category_id:
            self._active_category_or_error(session, changes["category_id"])

        before = ProductRead.model_validate(product).model_dump(mode="json")
        with store_errors(session, "update product"):
            for key, value in changes.items():
                setattr(product, key, value)
            _touch(product, actor_user)
            session.flush()
            read_model = ProductRead.model_validate(product)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=product.id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="catalog.product.updated",
                payload={"product_id": str(product.id), "changed_fields": sorted(changes)},
            )
            session.commit()
        return read_model

    def delete_product(self, session: Session, actor_user: ActorUser, product_id: uuid.UUID) -> None:
        product = self._get_or_404(session, product_id)
        before = ProductRead.model_validate(product).model_dump(mode="json")
        with store_errors(session, "delete product"):
            self.product_repository.soft_delete(session, product, actor_user.user_id)
            _emit(
                actor_user,
                entity_type=self.entity_type,
                entity_id=product.id,
                action="delete",
                before=before,
                after=None,
                event_type="catalog.product.deleted",
                payload={"product_id": str(product.id), "sku": product.sku},
            )
            session.commit()

    def list_products(
        self,
        session: Session,
        *,
        category_id: uuid.UUID | None = None,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[ProductRead]:
        return self.search_products(session, category_id=category_id, is_active=is_active, page=page, limit=limit)

    def search_products(
        self,
        session: Session,
        *,
        query: str | None = None,
        category_id: uuid.UUID | None = None,
        min_price: Decimal | None = None,
        max_price: Decimal | None = None,
        supplier: str | None = None,
        is_active: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[ProductRead]:
        if min_price is not None and max_price is not None and min_price > max_price:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="min_price must not exceed max_price",
            )
        page, limit = _page_bounds(page, limit)
        stmt = self.product_repository.active_query()
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(
                or_(
                    Product.name.ilike(pattern),
                    Product.description.ilike(pattern),
                    Product.sku.ilike(pattern),
                )
            )
        if category_id is not None:
            stmt = stmt.where(Product.category_id == category_id)
        if min_price is not None:
            stmt = stmt.where(Product.unit_price >= min_price)
        if max_price is not None:
            stmt = stmt.where(Product.unit_price <= max_price)
        if supplier:
            stmt = stmt.where(Product.supplier.ilike(supplier.strip()))
        if is_active is not None:
            stmt = stmt.where(Product.is_active.is_(is_active))

        rows, total = self.product_repository.paginate(session, stmt.order_by(Product.name, Product.sku), page, limit)
        return Page[ProductRead](
            data=[ProductRead.model_validate(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    def get_products_by_category(self, session: Session, category_id: uuid.UUID) -> list[ProductRead]:
        if self.category_repository.get(session, category_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
        return [ProductRead.model_validate(row) for row in self.product_repository.for_category(session, category_id)]

    def get_products_by_supplier(self, session: Session, supplier: str) -> list[ProductRead]:
        return [ProductRead.model_validate(row) for row in self.product_repository.for_supplier(session, supplier)]

    def bulk_update_products(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: ProductBulkUpdateRequest,
    ) -> list[ProductRead]:
        changes = dto.model_dump(exclude={"product_ids"}, exclude_unset=True)
        if not changes:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="No fields to update")
        ids = list(dict.fromkeys(dto.product_ids))
        products = self.product_repository.get_many(session, ids)
        missing = sorted(str(pid) for pid in set(ids) - {product.id for product in products})
        if missing:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Products not found: {', '.join(missing)}",
            )
        if changes.get("category_id") is not None:
            self._active_category_or_error(session, changes["category_id"])

        with store_errors(session, "bulk update products"):
            for product in products:
                for key, value in changes.items():
                    setattr(product, key, value)
                _touch(product, actor_user)
            session.flush()
            read_models = [ProductRead.model_validate(product) for product in products]
            for read_model in read_models:
                _emit(
                    actor_user,
                    entity_type=self.entity_type,
                    entity_id=read_model.id,
                    action="bulk_update",
                    before=None,
                    after=read_model.model_dump(mode="json"),
                    event_type="catalog.product.updated",
                    payload={"product_id": str(read_model.id), "changed_fields": sorted(changes)},
                )
            session.commit()
        return read_models

    # Categories

    def create_category(self, session: Session, actor_user: ActorUser, dto: CategoryCreate) -> CategoryRead:
        name = dto.name.strip()
        if self.category_repository.find_by_name(session, name):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Category with this name already exists")

        with store_errors(session, "create category"):
            category = ProductCategory(name=name, description=dto.description)
            session.add(category)
            session.flush()
            read_model = CategoryRead.model_validate(category)
            _emit(
                actor_user,
                entity_type="catalog.category",
                entity_id=category.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                event_type="catalog.category.created",
                payload={"category_id": str(category.id), "name": category.name},
            )
            session.commit()
        return read_model

    def get_product_categories(self, session: Session) -> list[CategoryRead]:
        return [
            CategoryRead.model_validate(category).model_copy(update={"product_count": count})
            for category, count in self.category_repository.list_with_counts(session)
        ]

    # Inventory

    def get_product_inventory(self, session: Session, product_id: uuid.UUID) -> InventoryRead:
        self._get_or_404(session, product_id)
        inventory = self.inventory_repository.for_product(session, product_id)
        if inventory is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Inventory not found for product")
        return InventoryRead.model_validate(inventory)

    def update_product_inventory(
        self,
        session: Session,
        actor_user: ActorUser,
        product_id: uuid.UUID,
        dto: InventoryUpdate,
    ) -> InventoryRead:
        product = self._get_or_404(session, product_id)
        inventory = self.inventory_repository.for_product(session, product.id)
        before = InventoryRead.model_validate(inventory).model_dump(mode="json") if inventory is not None else None
        changes = dto.model_dump(exclude_unset=True)

        on_hand = changes.get("quantity_on_hand", inventory.quantity_on_hand if inventory is not None else 0)
        reserved = changes.get("quantity_reserved", inventory.quantity_reserved if inventory is not None else 0)
        if (on_hand or 0) < (reserved or 0):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Reserved quantity cannot exceed quantity on hand",
            )

        with store_errors(session, "update product inventory"):
            if inventory is None:
                inventory = ProductInventory(product_id=product.id)
                session.add(inventory)
            for key, value in changes.items():
                if value is None and key != "warehouse":
                    continue
                setattr(inventory, key, value)
            inventory.updated_by = actor_user.user_id
            inventory.updated_at = utcnow()
            session.flush()
            read_model = InventoryRead.model_validate(inventory)
            _emit(
                actor_user,
                entity_type="catalog.inventory",
                entity_id=product.id,
                action="upsert",
                before=before,
                after=read_model.model_dump(mode="json"),
                event_type="catalog.product.inventory_updated",
                payload={
                    "product_id": str(product.id),
                    "quantity_available": read_model.quantity_available,
                    "needs_reorder": read_model.needs_reorder,
                },
            )
            session.commit()
        if read_model.needs_reorder:
            logger.info("product.reorder_needed", extra={"entity_id": str(product.id)})
        return read_model

    # Pricing

    def get_product_pricing(self, session: Session, product_id: uuid.UUID) -> list[PricingTierRead]:
        self._get_or_404(session, product_id)
        return [PricingTierRead.model_validate(tier) for tier in self.pricing_repository.for_product(session, product_id)]

    def update_product_pricing(
        self,
        session: Session,
        actor_user: ActorUser,
        product_id: uuid.UUID,
        tiers: list[PricingTierInput],
    ) -> list[PricingTierRead]:
        product = self._get_or_404(session, product_id)
        seen: set[tuple[int, str | None]] = set()
        for tier in tiers:
            key = (tier.min_quantity, tier.customer_segment)
            if key in seen:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Duplicate pricing tier for min_quantity {tier.min_quantity}",
                )
            seen.add(key)

        before = [tier.model_dump(mode="json") for tier in self.get_product_pricing(session, product.id)]
        with store_errors(session, "update product pricing"):
            self.pricing_repository.clear(session, product.id)
            for tier in tiers:
                session.add(ProductPricingTier(product_id=product.id, **tier.model_dump()))
            _touch(product, actor_user)
            session.flush()
            read_models = [
                PricingTierRead.model_validate(tier) for tier in self.pricing_repository.for_product(session, product.id)
            ]
            _emit(
                actor_user,
                entity_type="catalog.pricing",
                entity_id=product.id,
                action="replace",
                before={"tiers": before},
                after={"tiers": [tier.model_dump(mode="json") for tier in read_models]},
                event_type="catalog.product.pricing_updated",
                payload={"product_id": str(product.id), "tier_count": len(read_models)},
            )
            session.commit()
        return read_models

    # Analytics

    def get_product_analytics(self, session: Session) -> ProductAnalytics:
        stmt = self.product_repository.active_query().options(
            selectinload(Product.category),
            selectinload(Product.inventory),
        )
        products = list(session.scalars(stmt).all())
        active = [product for product in products if product.is_active]

        by_category: Counter[str] = Counter()
        for product in active:
            by_category[product.category.name if product.category is not None else "uncategorized"] += 1

        average_price = Decimal("0")
        if active:
            average_price = (sum((Decimal(p.unit_price) for p in active), Decimal("0")) / len(active)).quantize(
                _CENT, rounding=ROUND_HALF_UP
            )
        low_stock = sum(1 for p in active if p.inventory is not None and p.inventory.needs_reorder)

        return ProductAnalytics(
            total_products=len(products),
            active_products=len(active),
            inactive_products=len(products) - len(active),
            by_category=dict(by_category),
            average_price=average_price,
            low_stock_products=low_stock,
        )

    def _get_or_404(self, session: Session, product_id: uuid.UUID) -> Product:
        product = self.product_repository.get(session, product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        return product

    def _active_category_or_error(self, session: Session, category_id: uuid.UUID) -> ProductCategory:
        category = self.category_repository.get(session, category_id)
        if category is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
        if not category.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Category is not active")
        return category
