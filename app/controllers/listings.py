import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.database.connection import get_db
from app.database.models import CartEntry, Listing, ListingPhoto, User
from app.models.listing import ListingCreate, ListingResponse, SoldResponse
from app.services.errors import InvalidImageError
from app.services.fanout import notify_after_commit
from app.services.storage import save_data_url

logger = logging.getLogger(__name__)

router = APIRouter()


def to_listing_response(listing: Listing) -> ListingResponse:
    return ListingResponse(
        id=listing.id,
        seller_id=listing.seller_id,
        name=listing.name,
        description=listing.description,
        price=listing.price,
        bike_type=listing.bike_type,
        component_type=listing.component_type,
        seller_name=listing.seller.name if listing.seller else None,
        seller_phone=listing.seller.phone if listing.seller else None,
        seller_photo=listing.seller.photo_url if listing.seller else None,
        photos=[photo.url for photo in listing.photos],
        created_at=listing.created_at,
    )


def listing_query():
    return select(Listing).options(selectinload(Listing.seller), selectinload(Listing.photos))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def publish_listing(listing: ListingCreate, db: AsyncSession = Depends(get_db)):
    if not await db.get(User, listing.seller_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    db_listing = Listing(**listing.model_dump(exclude={"photos"}))
    db.add(db_listing)
    try:
        await db.flush()
        for index, photo in enumerate(listing.photos):
            url = save_data_url(photo, f"listings/{db_listing.id}", f"photo_{index}")
            db.add(ListingPhoto(listing_id=db_listing.id, url=url))
        await db.commit()
    except InvalidImageError as e:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        await db.rollback()
        logger.error(f"Error publishing listing for user {listing.seller_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to publish the listing")

    return {"message": "Listing published", "listing_id": db_listing.id}


@router.get("/", response_model=List[ListingResponse])
async def get_listings(
        bike_type: Optional[str] = None,
        component_type: Optional[str] = None,
        db: AsyncSession = Depends(get_db),
):
    stmt = listing_query()
    if bike_type:
        stmt = stmt.where(func.lower(Listing.bike_type) == bike_type.lower())
    if component_type:
        stmt = stmt.where(func.lower(Listing.component_type) == component_type.lower())
    result = await db.execute(stmt.order_by(Listing.id.desc()))
    return [to_listing_response(listing) for listing in result.scalars().all()]


@router.get("/search", response_model=List[ListingResponse])
async def search_listings(name: str = Query(""), db: AsyncSession = Depends(get_db)):
    if not name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='The "name" parameter is required')
    stmt = listing_query().where(Listing.name.ilike(f"%{name.strip()}%")).order_by(Listing.id.desc())
    result = await db.execute(stmt)
    return [to_listing_response(listing) for listing in result.scalars().all()]


@router.get("/user/{seller_id}", response_model=List[ListingResponse])
async def get_seller_listings(seller_id: int, db: AsyncSession = Depends(get_db)):
    stmt = listing_query().where(Listing.seller_id == seller_id).order_by(Listing.id.desc())
    result = await db.execute(stmt)
    return [to_listing_response(listing) for listing in result.scalars().all()]


@router.delete("/{listing_id}/sold", response_model=SoldResponse)
async def mark_sold(listing_id: int, db: AsyncSession = Depends(get_db)):
    """
    Removes a sold listing together with every cart entry holding it, then
    lets the buyers who had it in their cart know it is gone.
    """
    listing = await db.get(Listing, listing_id)
    if not listing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
    seller_id = listing.seller_id
    listing_name = listing.name or "Item"

    result = await db.execute(select(CartEntry.user_id).where(CartEntry.listing_id == listing_id))
    buyers = list(result.scalars().all())

    try:
        await db.execute(delete(CartEntry).where(CartEntry.listing_id == listing_id))
        await db.execute(delete(ListingPhoto).where(ListingPhoto.listing_id == listing_id))
        await db.execute(delete(Listing).where(Listing.id == listing_id))
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Transaction failed while removing listing {listing_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to remove the listing")

    audience = [buyer_id for buyer_id in buyers if buyer_id != seller_id]
    report = await notify_after_commit(
        db,
        audience,
        "Item no longer available",
        f'The item "{listing_name}" in your cart has been sold.',
        {"type": "item_sold", "listing_id": str(listing_id), "listing_name": listing_name},
    )
    notified = 0
    if report:
        notified = report.targeted - len(report.record_write_failures)

    if report is None:
        message = "Listing removed; buyers could not be notified"
    elif notified:
        message = f"Listing removed and {notified} buyer(s) notified"
    else:
        message = "Listing removed"

    return SoldResponse(
        message=message,
        buyers_notified=notified,
        total_buyers=len(buyers),
        notified=report is not None,
    )
