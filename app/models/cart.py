from pydantic import BaseModel


class CartItemRequest(BaseModel):
    user_id: int
    listing_id: int


class CartAddResponse(BaseModel):
    message: str
    notification_created: bool
