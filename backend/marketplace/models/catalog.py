from __future__ import annotations

from ..extensions import db


class Product(db.Model):
    """
    Catalog product, reduced to what fulfillment touches.

    `in_stock` is derived: true when any active supplier offer on the product
    (base or variant) still has units available.
    """
    __tablename__ = "products"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    in_stock = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "in_stock": self.in_stock, "is_active": self.is_active}


class ProductVariant(db.Model):
    __tablename__ = "product_variants"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    label = db.Column(db.String(255), nullable=True)
    in_stock = db.Column(db.Boolean, nullable=False, default=True)

    product = db.relationship("Product", backref=db.backref("variants", lazy=True))


class SupplierProductOffer(db.Model):
    """Supplier stock and cost for a product sold without variants."""
    __tablename__ = "supplier_product_offers"
    __table_args__ = (
        db.UniqueConstraint("supplier_id", "product_id", name="uq_supplier_product_offer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    unit_cost_kobo = db.Column(db.Integer, nullable=False)
    available_qty = db.Column(db.Integer, nullable=False, default=0)
    in_stock = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)


class SupplierVariantOffer(db.Model):
    """Supplier stock and cost for one product variant."""
    __tablename__ = "supplier_variant_offers"
    __table_args__ = (
        db.UniqueConstraint("supplier_id", "variant_id", name="uq_supplier_variant_offer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)
    unit_cost_kobo = db.Column(db.Integer, nullable=False)
    available_qty = db.Column(db.Integer, nullable=False, default=0)
    in_stock = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
