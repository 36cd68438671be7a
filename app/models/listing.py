from pydantic import BaseModel, ConfigDict, field_validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal


class ListingBase(BaseModel):
    name: str
    description: Optional[str] = None
    price: Decimal
    bike_type: Optional[str] = None
    component_type: Optional[str] = None


class ListingCreate(ListingBase):
    seller_id: int
    photos: List[str]

    @field_validator('photos')
    def validate_photos(cls, v):
        if not v:
            raise ValueError('At least one photo is required')
        return v


class ListingResponse(ListingBase):
    id: int
    seller_id: int
    seller_name: Optional[str] = None
    seller_phone: Optional[str] = None
    seller_photo: Optional[str] = None
    photos: List[str] = []
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SoldResponse(BaseModel):
    message: str
    buyers_notified: int
    total_buyers: int
    notified: bool
