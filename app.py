import os
import io
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Header, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import qrcode

from database import SessionLocal, init_db
from errors import LedgerError, InvalidArgument
from ledger import Notification, ProductLedger, ProductRecord, ProductState, Role
import schemas
from schemas import CreateProduct, MetadataUpdate, RoleUpdate, ProductOut, EventOut
from utils import normalize_address

# ---------- Config ----------
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
# account #0 of the local development chain
LEDGER_OWNER = os.getenv("LEDGER_OWNER", "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- Ledger ----------
_ledger: Optional[ProductLedger] = None

def log_notification(note: Notification) -> None:
    logger.info("event #%s %s product=%s %s", note.seq, note.type, note.product_id, note.args)

def get_ledger() -> ProductLedger:
    global _ledger
    if _ledger is None:
        init_db()
        _ledger = ProductLedger.open(SessionLocal, LEDGER_OWNER)
        _ledger.subscribe(log_notification)
    return _ledger

def get_caller(x_caller_address: str = Header(..., description="address of the acting wallet")) -> str:
    return x_caller_address

@asynccontextmanager
async def lifespan(app: FastAPI):
    ledger = get_ledger()
    logger.info("ledger ready, owner %s", ledger.owner)
    yield

app = FastAPI(title="Supply Chain Product Ledger", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# ---------- Helpers ----------
def _product_out(record: ProductRecord) -> ProductOut:
    return ProductOut(
        product_id=record.product_id,
        name=record.name,
        origin_farm=record.origin_farm,
        metadata_cid=record.metadata_cid,
        farmer=record.farmer,
        shipper=record.shipper,
        receiver=record.receiver,
        current_owner=record.current_owner,
        state=record.state.label,
        state_code=record.state.value,
        created_at=record.created_at,
        shipped_at=record.shipped_at,
        received_at=record.received_at,
    )

def _event_out(note: Notification) -> EventOut:
    return EventOut(
        seq=note.seq,
        type=note.type,
        product_id=note.product_id,
        args=note.args,
        timestamp=note.timestamp,
        prev_hash=note.prev_hash,
        hash=note.hash,
    )

# ---------- APIs: ledger ----------
@app.get("/api/ledger", response_model=schemas.LedgerSummary)
def ledger_info(ledger: ProductLedger = Depends(get_ledger)):
    return schemas.LedgerSummary(**ledger.info())

@app.get("/api/events", response_model=schemas.EventList)
def list_events(
    after: int = Query(0, ge=0, description="last sequence number already seen"),
    limit: int = Query(100, ge=1, le=500),
    ledger: ProductLedger = Depends(get_ledger),
):
    notes = ledger.events(after=after, limit=limit)
    return schemas.EventList(
        items=[_event_out(n) for n in notes],
        next_after=notes[-1].seq if notes else after,
    )

# ---------- APIs: one product ----------
@app.post("/api/products", response_model=ProductOut, status_code=201)
def create_product(body: CreateProduct, caller: str = Depends(get_caller),
                   ledger: ProductLedger = Depends(get_ledger)):
    return _product_out(ledger.create_product(body.product_id, body.name, body.origin_farm, caller))

@app.get("/api/products/{product_id}", response_model=ProductOut)
def get_product(product_id: int, ledger: ProductLedger = Depends(get_ledger)):
    return _product_out(ledger.get_product(product_id))

@app.post("/api/products/{product_id}/ship", response_model=ProductOut)
def ship_product(product_id: int, caller: str = Depends(get_caller),
                 ledger: ProductLedger = Depends(get_ledger)):
    return _product_out(ledger.ship_product(product_id, caller))

@app.post("/api/products/{product_id}/receive", response_model=ProductOut)
def receive_product(product_id: int, caller: str = Depends(get_caller),
                    ledger: ProductLedger = Depends(get_ledger)):
    return _product_out(ledger.receive_product(product_id, caller))

@app.put("/api/products/{product_id}/metadata", response_model=ProductOut)
def set_metadata(product_id: int, body: MetadataUpdate, caller: str = Depends(get_caller),
                 ledger: ProductLedger = Depends(get_ledger)):
    return _product_out(ledger.set_metadata_cid(product_id, body.cid, caller))

@app.get("/api/products/{product_id}/history", response_model=schemas.ProductHistory)
def product_history(product_id: int, ledger: ProductLedger = Depends(get_ledger)):
    record = ledger.get_product(product_id)
    notes, verified = ledger.history(product_id)
    return schemas.ProductHistory(
        product=_product_out(record),
        verified=verified,
        total_events=len(notes),
        chain=[_event_out(n) for n in notes],
    )

@app.get("/api/products/{product_id}/qrcode")
def product_qrcode(product_id: int, ledger: ProductLedger = Depends(get_ledger)):
    record = ledger.get_product(product_id)
    url = f"{BASE_URL}/?productId={record.product_id}"
    img = qrcode.make(url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")

# ---------- Products listing & search ----------
@app.get("/api/products", response_model=schemas.ProductList)
def list_products(
    q: Optional[str] = Query(None, description="search name / origin farm"),
    state: Optional[str] = Query(None, description="Created, Shipped or Received"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    ledger: ProductLedger = Depends(get_ledger),
):
    wanted = None
    if state:
        try:
            wanted = ProductState[state.upper()]
        except KeyError:
            raise InvalidArgument("Invalid state")
    total, records = ledger.list_products(state=wanted, q=q, page=page, page_size=page_size)
    return schemas.ProductList(
        items=[_product_out(r) for r in records],
        total=total,
        page=page,
        page_size=page_size,
    )

# ---------- Roles ----------
@app.get("/api/roles/{address}", response_model=schemas.RoleStatus)
def get_roles(address: str, ledger: ProductLedger = Depends(get_ledger)):
    roles = ledger.roles_of(address)
    return schemas.RoleStatus(
        address=normalize_address(address),
        is_owner=normalize_address(address) == ledger.owner,
        **roles,
    )

@app.put("/api/roles/{role}/{address}", response_model=schemas.RoleStatus)
def set_role(role: Role, address: str, body: RoleUpdate, caller: str = Depends(get_caller),
             ledger: ProductLedger = Depends(get_ledger)):
    ledger.set_role(role, address, body.enabled, caller)
    return get_roles(address, ledger)
