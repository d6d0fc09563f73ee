from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Numeric,
    DateTime,
    ForeignKey,
)

from ..db import Base
from ...helpers import utcnow


# ----------------------------
# ORM models
# ----------------------------
class OrderTicketGroup(Base):
    __tablename__ = "order_ticket_group"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_group_id = Column(Integer, nullable=False)
    cust_id = Column(String, nullable=True, index=True)

    # initiate | pending | success | failed
    transaction_status = Column(String, nullable=False, default="initiate")
    transaction_id = Column(String, nullable=False, default="")
    transaction_date = Column(String, nullable=False, default="")
    msg_token = Column(String, nullable=False, default="")
    bill_id = Column(String, nullable=False, default="")
    product_id = Column(String, nullable=False, default="")
    total_amount = Column(Numeric(10, 2, asdecimal=True), nullable=False)
    buyer_name = Column(String, nullable=False, default="")
    buyer_email = Column(String, nullable=False, default="")
    product_desc = Column(String, nullable=False, default="")
    order_no = Column(String, nullable=False, unique=True)
    status_message = Column(String, nullable=False, default="")
    bank_current_status = Column(String, nullable=False, default="")
    bank_code = Column(String, nullable=False, default="")
    bank_name = Column(String, nullable=False, default="")
    lang_chosen = Column(String, nullable=False, default="en")
    is_email_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class OrderTicketInfo(Base):
    __tablename__ = "order_ticket_info"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_ticket_group_id = Column(
        Integer, ForeignKey("order_ticket_group.id"), nullable=False, index=True
    )
    item_id = Column(String, nullable=False)
    unit_price = Column(Numeric(10, 2, asdecimal=True), nullable=False)
    item_desc1 = Column(String, nullable=False, default="")
    item_desc2 = Column(String, nullable=False, default="")
    item_desc3 = Column(String, nullable=False, default="")
    print_type = Column(String, nullable=False, default="")
    quantity_bought = Column(Integer, nullable=False, default=1)
    variant = Column(String, nullable=False, default="default")
    # empty until provisioned
    encrypted_id = Column(String, nullable=False, default="")
    admit_date = Column(String, nullable=False, default="")
    twbid = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class OrderTicketLog(Base):
    __tablename__ = "order_ticket_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_ticket_group_id = Column(
        Integer, ForeignKey("order_ticket_group.id"), nullable=False, index=True
    )
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False, default="")
    date = Column(String(14), nullable=False)  # yyyymmddhhmmss, Malaysia time
