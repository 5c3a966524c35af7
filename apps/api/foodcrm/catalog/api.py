from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from foodcrm.api.errors import failure
from foodcrm.catalog.schemas import (
    CategoryCreate,
    CategoryRead,
    InventoryRead,
    InventoryUpdate,
    PricingTierRead,
    PricingUpdateRequest,
    ProductAnalytics,
    ProductBulkUpdateRequest,
    ProductCreate,
    ProductDetailRead,
    ProductRead,
    ProductUpdate,
)
from foodcrm.catalog.service import ProductService
from foodcrm.core.auth import ActorUser
from foodcrm.core.database import get_db
from foodcrm.core.rbac import get_current_actor, require_permission
from foodcrm.crm.schemas import Page

router = APIRouter(prefix="/api/products", tags=["catalog.products"])
service = ProductService()


@router.post("", response_model=ProductRead, status_code=status.HTTP_201_CREATED)
def create_product(
    request: Request,
    dto: ProductCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ProductRead | JSONResponse:
    try:
        require_permission(user, "products", "create")
        return service.create_product(db, user, dto)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="create")


@router.get("", response_model=Page[ProductRead])
def list_products(
    request: Request,
    category_id: uuid.UUID | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Page[ProductRead] | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.list_products(db, category_id=category_id, is_active=is_active, page=page, limit=limit)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="list")


@router.get("/search", response_model=Page[ProductRead])
def search_products(
    request: Request,
    query: str | None = Query(default=None, alias="q"),
    category_id: uuid.UUID | None = Query(default=None),
    min_price: Decimal | None = Query(default=None, ge=0),
    max_price: Decimal | None = Query(default=None, ge=0),
    supplier: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Page[ProductRead] | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.search_products(
            db,
            query=query,
            category_id=category_id,
            min_price=min_price,
            max_price=max_price,
            supplier=supplier,
            is_active=is_active,
            page=page,
            limit=limit,
        )
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="search")


@router.get("/categories", response_model=list[CategoryRead])
def get_product_categories(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[CategoryRead] | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.get_product_categories(db)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="category", operation="list")


@router.post("/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
def create_category(
    request: Request,
    dto: CategoryCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> CategoryRead | JSONResponse:
    try:
        require_permission(user, "products", "create")
        return service.create_category(db, user, dto)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="category", operation="create")


@router.get("/categories/{category_id}/products", response_model=list[ProductRead])
def get_products_by_category(
    request: Request,
    category_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[ProductRead] | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.get_products_by_category(db, category_id)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="list")


@router.get("/suppliers/{supplier}", response_model=list[ProductRead])
def get_products_by_supplier(
    request: Request,
    supplier: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[ProductRead] | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.get_products_by_supplier(db, supplier)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="list")


@router.get("/analytics", response_model=ProductAnalytics)
def get_product_analytics(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ProductAnalytics | JSONResponse:
    try:
        require_permission(user, "analytics", "read")
        return service.get_product_analytics(db)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="analyze")


@router.post("/bulk", response_model=list[ProductRead])
def bulk_update_products(
    request: Request,
    dto: ProductBulkUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[ProductRead] | JSONResponse:
    try:
        require_permission(user, "products", "update")
        return service.bulk_update_products(db, user, dto)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="bulk_update")


@router.get("/{product_id}", response_model=ProductDetailRead)
def get_product(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ProductDetailRead | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.get_product(db, product_id)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="get")


@router.patch("/{product_id}", response_model=ProductRead)
def update_product(
    request: Request,
    product_id: uuid.UUID,
    dto: ProductUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ProductRead | JSONResponse:
    try:
        require_permission(user, "products", "update")
        return service.update_product(db, user, product_id, dto)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="update")


@router.delete("/{product_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_product(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> Any:
    try:
        require_permission(user, "products", "delete")
        service.delete_product(db, user, product_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="product", operation="delete")


@router.get("/{product_id}/inventory", response_model=InventoryRead)
def get_product_inventory(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InventoryRead | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.get_product_inventory(db, product_id)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="inventory", operation="get")


@router.put("/{product_id}/inventory", response_model=InventoryRead)
def update_product_inventory(
    request: Request,
    product_id: uuid.UUID,
    dto: InventoryUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> InventoryRead | JSONResponse:
    try:
        require_permission(user, "products", "update")
        return service.update_product_inventory(db, user, product_id, dto)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="inventory", operation="update")


@router.get("/{product_id}/pricing", response_model=list[PricingTierRead])
def get_product_pricing(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[PricingTierRead] | JSONResponse:
    try:
        require_permission(user, "products", "read")
        return service.get_product_pricing(db, product_id)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="pricing", operation="get")


@router.put("/{product_id}/pricing", response_model=list[PricingTierRead])
def update_product_pricing(
    request: Request,
    product_id: uuid.UUID,
    dto: PricingUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[PricingTierRead] | JSONResponse:
    try:
        require_permission(user, "products", "update")
        return service.update_product_pricing(db, user, product_id, dto.tiers)
    except HTTPException as exc:
        return failure(request, exc, area="catalog", entity="pricing", operation="update")
