from pydantic import BaseModel, Field
from typing import Optional, Any, Dict, List

# Text fields are validated by the ledger, after the role check.

class CreateProduct(BaseModel):
    product_id: int
    name: str
    origin_farm: str

class MetadataUpdate(BaseModel):
    cid: str

class RoleUpdate(BaseModel):
    enabled: bool = True

class ProductOut(BaseModel):
    product_id: int
    name: str
    origin_farm: str
    metadata_cid: str
    farmer: str
    shipper: str
    receiver: str
    current_owner: str
    state: str
    state_code: int
    created_at: int
    shipped_at: int
    received_at: int

class ProductList(BaseModel):
    items: List[ProductOut]
    total: int
    page: int
    page_size: int

class EventOut(BaseModel):
    seq: int
    type: str
    product_id: int
    args: Dict[str, Any]
    timestamp: int
    prev_hash: str
    hash: str

class EventList(BaseModel):
    items: List[EventOut]
    next_after: int

class ProductHistory(BaseModel):
    product: ProductOut
    verified: bool
    total_events: int
    chain: List[EventOut]

class RoleStatus(BaseModel):
    address: str
    farmer: bool
    shipper: bool
    receiver: bool
    is_owner: bool = False

class LedgerSummary(BaseModel):
    owner: str
    created_at: int
    products: int
    events: int

class ErrorOut(BaseModel):
    kind: str
    reason: str
    scope: Optional[str] = Field(None, description="authorization class for not_authorized")
