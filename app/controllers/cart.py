import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.controllers.listings import listing_query, to_listing_response
from app.database.connection import get_db
from app.database.models import CartEntry, Listing, User
from app.models.cart import CartAddResponse, CartItemRequest
from app.models.listing import ListingResponse
from app.services.fanout import notify_after_commit

logger = logging.getLogger(__name__)

router = APIRouter()


async def _find_entry(db: AsyncSession, user_id: int, listing_id: int):
    stmt = select(CartEntry).where(CartEntry.user_id == user_id, CartEntry.listing_id == listing_id)
    result = await db.execute(stmt)
    return result.scalars().first()


@router.post("/", response_model=CartAddResponse, status_code=status.HTTP_201_CREATED)
async def add_to_cart(item: CartItemRequest, db: AsyncSession = Depends(get_db)):
    if not await db.get(User, item.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    listing = await db.get(Listing, item.listing_id)
    if not listing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
    if await _find_entry(db, item.user_id, item.listing_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Listing is already in the cart")

    seller_id = listing.seller_id
    listing_name = listing.name
    db.add(CartEntry(user_id=item.user_id, listing_id=item.listing_id))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Listing is already in the cart")
    logger.info(f"User {item.user_id} added listing {item.listing_id} to the cart")

    # Sellers are not told about their own listing going into their own cart.
    notify_seller = seller_id != item.user_id
    if notify_seller:
        await notify_after_commit(
            db,
            [seller_id],
            "New interest in your item!",
            f'Someone added "{listing_name}" to their cart. Check your sales.',
            {"type": "cart_interest", "listing_id": str(item.listing_id), "listing_name": listing_name},
        )

    return CartAddResponse(message="Listing added to the cart", notification_created=notify_seller)


@router.get("/{user_id}", response_model=List[ListingResponse])
async def get_cart(user_id: int, db: AsyncSession = Depends(get_db)):
    stmt = (
        listing_query()
        .join(CartEntry, CartEntry.listing_id == Listing.id)
        .where(CartEntry.user_id == user_id)
        .order_by(CartEntry.id)
    )
    result = await db.execute(stmt)
    return [to_listing_response(listing) for listing in result.scalars().all()]


@router.delete("/")
async def remove_from_cart(item: CartItemRequest, db: AsyncSession = Depends(get_db)):
    entry = await _find_entry(db, item.user_id, item.listing_id)
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found in the cart")

    await db.delete(entry)
    await db.commit()
    return {"success": True, "message": "Listing removed from the cart"}
