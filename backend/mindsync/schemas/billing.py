"""Pydantic schemas for checkout and portal sessions"""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional


class CamelModel(BaseModel):
    """Accepts camelCase keys from the frontend as well as snake_case"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutSessionRequest(CamelModel):
    # Optional so missing values get the specific 400 messages from the service
    price_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalSessionRequest(CamelModel):
    return_url: Optional[str] = None
