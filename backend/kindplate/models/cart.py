from __future__ import annotations

from ..extensions import db
from kindplate.time_utils import to_utc_z


class CartItem(db.Model):
    """
    Ephemeral per-customer cart line.

    INVARIANT: every row for one customer points at offers of a single
    business (cart_service claims the customer's Cart row before adding).
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "offer_id", name="uq_cart_items_customer_offer"),
        db.CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, nullable=False, index=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True)

    offer = db.relationship("Offer")

    def to_dict(self) -> dict:
        offer = self.offer
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "business_id": offer.business_id if offer else None,
            "title": offer.title if offer else None,
            "quantity": self.quantity,
            "unit_price_cents": offer.discounted_price_cents if offer else None,
            "line_total_cents": offer.discounted_price_cents * self.quantity if offer else None,
            "created_at": to_utc_z(self.created_at),
        }


class Cart(db.Model):
    """
    One row per customer naming the business the cart currently belongs to.

    Every add claims this row with a conditional update, so concurrent adds
    for different businesses serialize on it and only one can win.
    business_id may point at a business whose lines are all gone; the next
    add for another business then takes it over.
    """
    __tablename__ = "carts"

    customer_id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=True)
    updated_at = db.Column(db.DateTime, nullable=True)
