from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Numeric,
    ForeignKey,
)

from ..db import Base


# Catalog tables are owned by the back-office CRUD; we only read them.
class TicketGroup(Base):
    __tablename__ = "ticket_group"
    id = Column(Integer, primary_key=True, autoincrement=True)
    group_name = Column(String, nullable=False)
    group_name_bm = Column(String, nullable=False, default="")
    group_name_en = Column(String, nullable=False, default="")
    group_name_cn = Column(String, nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    is_ticket_internal = Column(Boolean, nullable=False, default=False)
    active_start_date = Column(String(8), nullable=True)  # yyyymmdd
    active_end_date = Column(String(8), nullable=True)  # yyyymmdd
    # comma separated ItemIds; empty -> everything the issuer lists
    ticket_ids = Column(String, nullable=False, default="")
    organiser_contact = Column(String, nullable=False, default="")
    organiser_email = Column(String, nullable=False, default="")
    location_address = Column(String, nullable=False, default="")

    def display_name(self, lang: str) -> str:
        localized = {
            "bm": self.group_name_bm,
            "en": self.group_name_en,
            "cn": self.group_name_cn,
        }.get(lang)
        return localized or self.group_name

    def allowed_ticket_ids(self) -> list:
        return [t.strip() for t in (self.ticket_ids or "").split(",") if t.strip()]


class TicketVariant(Base):
    __tablename__ = "ticket_variant"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_group_id = Column(
        Integer, ForeignKey("ticket_group.id"), nullable=False, index=True
    )
    ticket_id = Column(String, nullable=False)
    name_bm = Column(String, nullable=False, default="")
    name_en = Column(String, nullable=False, default="")
    name_cn = Column(String, nullable=False, default="")
    unit_price = Column(Numeric(10, 2, asdecimal=True), nullable=False)
    print_type = Column(String, nullable=False, default="")


class Customer(Base):
    __tablename__ = "customer"
    cust_id = Column(String, primary_key=True)
    full_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    contact_no = Column(String, nullable=False, default="")
    identification_no = Column(String, nullable=False, default="")
