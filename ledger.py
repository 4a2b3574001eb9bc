"""Product ledger: role-gated provenance records for farm produce.

A product moves through ``Created -> Shipped -> Received`` exactly once.
The ledger owns the role registry and the record store; every mutation runs
under one lock inside one database transaction, so mutations are totally
ordered and either apply fully or not at all.  Ledgers in other processes
are ordered by the database: SQLite transactions take the write lock up
front, and state transitions are compare-and-set updates on the row.
Committed mutations are appended to a per-product hash-chained event log
and then published to the subscribed observers.
"""
import json
import logging
import threading
import time
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from errors import AlreadyExists, InvalidArgument, NotAuthorized, NotFound, WrongState
from models import ZERO_ADDRESS, LedgerEvent, LedgerInfo, Product, RoleMember
from utils import GENESIS, compute_hash, like_pattern, normalize_address, short_address, verify_chain

logger = logging.getLogger(__name__)

MAX_PRODUCT_ID = 2 ** 63 - 1


class ProductState(IntEnum):
    CREATED = 0
    SHIPPED = 1
    RECEIVED = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Role(str, Enum):
    FARMER = "farmer"
    SHIPPER = "shipper"
    RECEIVER = "receiver"


@dataclass(frozen=True)
class ProductRecord:
    product_id: int
    name: str
    origin_farm: str
    metadata_cid: str
    farmer: str
    shipper: str
    receiver: str
    current_owner: str
    state: ProductState
    created_at: int
    shipped_at: int
    received_at: int

    @classmethod
    def from_row(cls, row: Product) -> "ProductRecord":
        return cls(
            product_id=row.product_id,
            name=row.name,
            origin_farm=row.origin_farm,
            metadata_cid=row.metadata_cid,
            farmer=row.farmer,
            shipper=row.shipper,
            receiver=row.receiver,
            current_owner=row.current_owner,
            state=ProductState(row.state),
            created_at=row.created_at,
            shipped_at=row.shipped_at,
            received_at=row.received_at,
        )


@dataclass(frozen=True)
class Notification:
    seq: int
    type: str
    product_id: int
    args: Dict[str, Any]
    timestamp: int
    prev_hash: str
    hash: str

    @classmethod
    def from_row(cls, row: LedgerEvent) -> "Notification":
        return cls(
            seq=row.id,
            type=row.type,
            product_id=row.product_id,
            args=json.loads(row.payload),
            timestamp=row.timestamp,
            prev_hash=row.prev_hash,
            hash=row.hash,
        )


Listener = Callable[[Notification], None]


class RoleRegistry:
    """Farmer/Shipper/Receiver membership, one row per (address, role)."""

    def __init__(self, db: Session):
        self.db = db

    def has(self, address: str, role: Role) -> bool:
        return self.db.get(RoleMember, (address, role.value)) is not None

    def set(self, address: str, role: Role, enabled: bool) -> None:
        member = self.db.get(RoleMember, (address, role.value))
        if enabled and member is None:
            self.db.add(RoleMember(address=address, role=role.value))
        elif not enabled and member is not None:
            self.db.delete(member)

    def roles_of(self, address: str) -> Dict[str, bool]:
        held = set(self.db.scalars(
            select(RoleMember.role).where(RoleMember.address == address)
        ).all())
        return {role.value: role.value in held for role in Role}


def _unix_now() -> int:
    return int(time.time())


# Ledgers sharing an engine in one process share its lock.
_engine_locks: "weakref.WeakKeyDictionary[Any, threading.RLock]" = weakref.WeakKeyDictionary()
_engine_locks_guard = threading.Lock()

def _lock_for(session_factory: sessionmaker) -> threading.RLock:
    bind = session_factory.kw.get("bind")
    if bind is None:
        return threading.RLock()
    with _engine_locks_guard:
        lock = _engine_locks.get(bind)
        if lock is None:
            lock = _engine_locks[bind] = threading.RLock()
        return lock


class ProductLedger:
    def __init__(self, session_factory: sessionmaker, owner: str,
                 clock: Optional[Callable[[], int]] = None):
        self._session_factory = session_factory
        self.owner = normalize_address(owner)
        self._clock = clock or _unix_now
        self._lock = _lock_for(session_factory)
        self._listeners: List[Listener] = []

    @classmethod
    def open(cls, session_factory: sessionmaker, owner: str,
             clock: Optional[Callable[[], int]] = None) -> "ProductLedger":
        """Load the ledger stored behind ``session_factory``, creating it on first use.

        The owner is fixed the first time; a different ``owner`` on a later
        open is ignored.
        """
        owner = normalize_address(owner)
        clock = clock or _unix_now
        with _lock_for(session_factory), session_factory() as db, db.begin():
            info = db.get(LedgerInfo, 1)
            if info is None:
                info = LedgerInfo(id=1, owner=owner, created_at=clock())
                db.add(info)
                logger.info("ledger created with owner %s", owner)
            elif info.owner != owner:
                logger.warning("ledger owner is %s, ignoring configured owner %s", info.owner, owner)
            stored_owner = info.owner
        return cls(session_factory, stored_owner, clock)

    # ---------- observers ----------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _publish(self, note: Notification) -> None:
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception:
                logger.exception("listener %r failed on %s #%s", listener, note.type, note.seq)

    # ---------- internals ----------
    @contextmanager
    def _transaction(self):
        with self._session_factory() as db, db.begin():
            if db.get_bind().dialect.name == "sqlite":
                # hold the database write lock from the first read on, so a
                # ledger in another process waits instead of reading stale state
                db.connection().exec_driver_sql("BEGIN IMMEDIATE")
            yield db

    @contextmanager
    def _reading(self):
        # an in-memory engine hands every session the same connection;
        # closing a reader's session must not end a writer's transaction
        with self._lock, self._session_factory() as db:
            yield db

    def _require_role(self, db: Session, caller: str, role: Role) -> None:
        if not RoleRegistry(db).has(caller, role):
            logger.debug("%s rejected: missing %s role", caller, role.value)
            raise NotAuthorized(role.value)

    def _require_product(self, db: Session, product_id: int) -> Product:
        product = db.get(Product, product_id) if 0 < product_id <= MAX_PRODUCT_ID else None
        if product is None:
            raise NotFound()
        return product

    def _emit(self, db: Session, product_id: int, ev_type: str, args: dict, ts: int) -> Notification:
        prev = db.scalar(
            select(LedgerEvent).where(LedgerEvent.product_id == product_id)
            .order_by(LedgerEvent.id.desc()).limit(1)
        )
        prev_hash = prev.hash if prev else GENESIS
        ev = LedgerEvent(
            product_id=product_id,
            type=ev_type,
            payload=json.dumps(args),
            timestamp=ts,
            prev_hash=prev_hash,
            hash=compute_hash(prev_hash, args, ts),
        )
        db.add(ev)
        db.flush()
        return Notification.from_row(ev)

    # ---------- role management ----------
    def set_role(self, role: Role, address: str, enabled: bool, caller: str) -> None:
        caller = normalize_address(caller)
        if caller != self.owner:
            raise NotAuthorized("owner")
        address = normalize_address(address)
        with self._lock:
            with self._transaction() as db:
                RoleRegistry(db).set(address, role, enabled)
        logger.info("%s role %s for %s", role.value, "granted" if enabled else "revoked", address)

    def set_farmer(self, address: str, enabled: bool, caller: str) -> None:
        self.set_role(Role.FARMER, address, enabled, caller)

    def set_shipper(self, address: str, enabled: bool, caller: str) -> None:
        self.set_role(Role.SHIPPER, address, enabled, caller)

    def set_receiver(self, address: str, enabled: bool, caller: str) -> None:
        self.set_role(Role.RECEIVER, address, enabled, caller)

    def has_role(self, role: Role, address: str) -> bool:
        try:
            address = normalize_address(address)
        except InvalidArgument:
            return False
        with self._reading() as db:
            return RoleRegistry(db).has(address, role)

    def is_farmer(self, address: str) -> bool:
        return self.has_role(Role.FARMER, address)

    def is_shipper(self, address: str) -> bool:
        return self.has_role(Role.SHIPPER, address)

    def is_receiver(self, address: str) -> bool:
        return self.has_role(Role.RECEIVER, address)

    def roles_of(self, address: str) -> Dict[str, bool]:
        address = normalize_address(address)
        with self._reading() as db:
            return RoleRegistry(db).roles_of(address)

    # ---------- product lifecycle ----------
    def create_product(self, product_id: int, name: str, origin_farm: str, caller: str) -> ProductRecord:
        caller = normalize_address(caller)
        with self._lock:
            with self._transaction() as db:
                self._require_role(db, caller, Role.FARMER)
                if product_id <= 0 or product_id > MAX_PRODUCT_ID:
                    raise InvalidArgument("Invalid productId")
                if not name:
                    raise InvalidArgument("Empty name")
                if not origin_farm:
                    raise InvalidArgument("Empty origin")
                if db.get(Product, product_id) is not None:
                    raise AlreadyExists()

                now = self._clock()
                product = Product(
                    product_id=product_id,
                    name=name,
                    origin_farm=origin_farm,
                    metadata_cid="",
                    farmer=caller,
                    shipper=ZERO_ADDRESS,
                    receiver=ZERO_ADDRESS,
                    current_owner=caller,
                    state=ProductState.CREATED.value,
                    created_at=now,
                    shipped_at=0,
                    received_at=0,
                )
                db.add(product)
                try:
                    db.flush()
                except IntegrityError:
                    # another writer inserted the same id after our lookup
                    raise AlreadyExists() from None
                note = self._emit(db, product_id, "ProductCreated", {
                    "product_id": product_id,
                    "name": name,
                    "origin_farm": origin_farm,
                    "farmer": caller,
                }, now)
                record = ProductRecord.from_row(product)
            logger.info("product %s created by %s", product_id, short_address(caller))
            self._publish(note)
        return record

    def _advance(self, product_id: int, caller: str, role: Role,
                 expected: ProductState, target: ProductState, ev_type: str) -> ProductRecord:
        caller = normalize_address(caller)
        wrong_state = f"Not in {expected.label} state"
        with self._lock:
            with self._transaction() as db:
                self._require_role(db, caller, role)
                product = self._require_product(db, product_id)
                if product.state != expected:
                    raise WrongState(wrong_state)

                now = self._clock()
                values = {"state": target.value, "current_owner": caller}
                if target is ProductState.SHIPPED:
                    values.update(shipper=caller, shipped_at=now)
                else:
                    values.update(receiver=caller, received_at=now)
                # compare-and-set: only the writer that still sees `expected` advances
                result = db.execute(
                    update(Product)
                    .where(Product.product_id == product_id, Product.state == expected.value)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise WrongState(wrong_state)
                db.refresh(product)
                note = self._emit(db, product_id, ev_type, {
                    "product_id": product_id,
                    role.value: caller,
                }, now)
                record = ProductRecord.from_row(product)
            logger.info("product %s %s by %s", product_id, target.label.lower(), short_address(caller))
            self._publish(note)
        return record

    def ship_product(self, product_id: int, caller: str) -> ProductRecord:
        return self._advance(product_id, caller, Role.SHIPPER,
                             ProductState.CREATED, ProductState.SHIPPED, "ProductShipped")

    def receive_product(self, product_id: int, caller: str) -> ProductRecord:
        return self._advance(product_id, caller, Role.RECEIVER,
                             ProductState.SHIPPED, ProductState.RECEIVED, "ProductReceived")

    def set_metadata_cid(self, product_id: int, cid: str, caller: str) -> ProductRecord:
        # An empty cid is stored as given; it clears the pointer.
        caller = normalize_address(caller)
        with self._lock:
            with self._transaction() as db:
                product = self._require_product(db, product_id)
                if caller != self.owner and caller != product.farmer:
                    raise NotAuthorized("metadata")
                # update the row before reading the chain head
                db.execute(
                    update(Product)
                    .where(Product.product_id == product_id)
                    .values(metadata_cid=cid)
                    .execution_options(synchronize_session=False)
                )
                db.refresh(product)
                note = self._emit(db, product_id, "ProductMetadataUpdated", {
                    "product_id": product_id,
                    "cid": cid,
                    "updated_by": caller,
                }, self._clock())
                record = ProductRecord.from_row(product)
            logger.info("product %s metadata set to %r by %s", product_id, cid, short_address(caller))
            self._publish(note)
        return record

    # ---------- reads ----------
    def get_product(self, product_id: int) -> ProductRecord:
        with self._reading() as db:
            return ProductRecord.from_row(self._require_product(db, product_id))

    def list_products(self, state: Optional[ProductState] = None, q: Optional[str] = None,
                      page: int = 1, page_size: int = 10) -> Tuple[int, List[ProductRecord]]:
        base = select(Product)
        if state is not None:
            base = base.where(Product.state == state.value)
        if q:
            like = like_pattern(q)
            base = base.where(or_(Product.name.ilike(like, escape="\\"),
                                  Product.origin_farm.ilike(like, escape="\\")))
        with self._reading() as db:
            total = db.scalar(select(func.count()).select_from(base.subquery()))
            rows = db.scalars(
                base.order_by(Product.product_id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
            ).all()
            return total or 0, [ProductRecord.from_row(r) for r in rows]

    def history(self, product_id: int) -> Tuple[List[Notification], bool]:
        """Events of one product, oldest first, and whether their hash chain holds."""
        with self._reading() as db:
            self._require_product(db, product_id)
            rows = db.scalars(
                select(LedgerEvent).where(LedgerEvent.product_id == product_id)
                .order_by(LedgerEvent.id.asc())
            ).all()
            notes = [Notification.from_row(r) for r in rows]
        chain = [{
            "payload": n.args,
            "timestamp": n.timestamp,
            "prev_hash": n.prev_hash,
            "hash": n.hash,
        } for n in notes]
        return notes, verify_chain(chain)

    def events(self, after: int = 0, limit: int = 100) -> List[Notification]:
        with self._reading() as db:
            rows = db.scalars(
                select(LedgerEvent).where(LedgerEvent.id > after)
                .order_by(LedgerEvent.id.asc()).limit(limit)
            ).all()
            return [Notification.from_row(r) for r in rows]

    def info(self) -> Dict[str, Any]:
        with self._reading() as db:
            ledger = db.get(LedgerInfo, 1)
            return {
                "owner": self.owner,
                "created_at": ledger.created_at if ledger else 0,
                "products": db.scalar(select(func.count()).select_from(Product)) or 0,
                "events": db.scalar(select(func.count()).select_from(LedgerEvent)) or 0,
            }
