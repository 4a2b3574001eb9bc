from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import BigInteger, Integer, String, Text, ForeignKey
from database import Base

ZERO_ADDRESS = "0x" + "0" * 40

class LedgerInfo(Base):
    __tablename__ = "ledger_info"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner: Mapped[str] = mapped_column(String(42))
    created_at: Mapped[int] = mapped_column(BigInteger)

class Product(Base):
    __tablename__ = "products"
    product_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text)
    origin_farm: Mapped[str] = mapped_column(Text)
    metadata_cid: Mapped[str] = mapped_column(Text, default="")
    farmer: Mapped[str] = mapped_column(String(42), index=True)
    shipper: Mapped[str] = mapped_column(String(42), default=ZERO_ADDRESS)
    receiver: Mapped[str] = mapped_column(String(42), default=ZERO_ADDRESS)
    current_owner: Mapped[str] = mapped_column(String(42))
    state: Mapped[int] = mapped_column(Integer, default=0, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, default=0)
    shipped_at: Mapped[int] = mapped_column(BigInteger, default=0)
    received_at: Mapped[int] = mapped_column(BigInteger, default=0)
    events: Mapped[list["LedgerEvent"]] = relationship(
        "LedgerEvent", back_populates="product", order_by="LedgerEvent.id"
    )

class RoleMember(Base):
    __tablename__ = "role_members"
    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    role: Mapped[str] = mapped_column(String(16), primary_key=True)

class LedgerEvent(Base):
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("products.product_id"), index=True)
    type: Mapped[str] = mapped_column(String(50))
    payload: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[int] = mapped_column(BigInteger)
    prev_hash: Mapped[str] = mapped_column(String(128))
    hash: Mapped[str] = mapped_column(String(128))
    product: Mapped[Product] = relationship("Product", back_populates="events")
