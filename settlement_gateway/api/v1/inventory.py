"""Stock levels per product, kept in step with the store's inventory system"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from settlement_gateway.api.dependencies import get_actor, get_request_id
from settlement_gateway.api.v1.schemas import StockLevel, StockResponse
from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.infrastructure.database.inventory import SqlInventory
from settlement_gateway.infrastructure.database.session import get_db, transactional

router = APIRouter()


@router.get("/products/{product_id}/stock", response_model=StockResponse)
def get_stock(product_id: int, db: Session = Depends(get_db)):
    """Units on hand; unknown products have none"""
    return StockResponse(product_id=product_id, quantity=SqlInventory(db).stock_of(product_id))


@router.put("/products/{product_id}/stock", response_model=StockResponse)
def sync_stock(
    product_id: int,
    body: StockLevel,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    """
    Overwrite the stock level after a physical count or an inventory sync.

    Sales, returns and supplier receptions move stock on their own; this is
    only for bringing the table in line with the counted quantity.
    """
    actor.require(Capability.MANAGE_INVENTORY)
    inventory = SqlInventory(db)
    with transactional(db):
        previous = inventory.stock_of(product_id)
        inventory.set_stock(product_id, body.quantity)

    logging.info(
        f"Stock for product {product_id} set to {body.quantity} (was {previous})",
        extra={"request_id": get_request_id(request), "actor_id": actor.actor_id, "product_id": product_id},
    )
    return StockResponse(product_id=product_id, quantity=body.quantity)
