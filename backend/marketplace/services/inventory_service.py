# Overview: Supplier offer stock adjustments and derived in-stock flags.

from __future__ import annotations

from sqlalchemy import func

from ..models import Product, ProductVariant, SupplierProductOffer, SupplierVariantOffer
from ..states import BaseOffer, OfferRef, VariantOffer
from .concurrency import lock_for_update


def resolve_offer(session, ref: OfferRef, *, for_update: bool = False):
    """Load the offer row a tagged reference points at."""
    if isinstance(ref, BaseOffer):
        model = SupplierProductOffer
    elif isinstance(ref, VariantOffer):
        model = SupplierVariantOffer
    else:
        raise TypeError(f"Unsupported offer reference {ref!r}")
    query = session.query(model).filter(model.id == ref.id)
    if for_update:
        query = lock_for_update(query)
    return query.first()


def restock_offer(session, ref: OfferRef, quantity: int):
    """
    Return reserved units to an offer.

    Returns the offer, or None when the offer no longer exists (deleted
    listing); callers treat that as nothing to restock.
    """
    offer = resolve_offer(session, ref, for_update=True)
    if offer is None or quantity <= 0:
        return offer
    offer.available_qty = (offer.available_qty or 0) + quantity
    offer.in_stock = offer.available_qty > 0
    return offer


def recompute_product_stock(session, product_id: int) -> bool:
    """
    Resync a product's (and its variants') in_stock from active offers.

    Returns the new product in_stock value.
    """
    base_units = (
        session.query(func.coalesce(func.sum(SupplierProductOffer.available_qty), 0))
        .filter(
            SupplierProductOffer.product_id == product_id,
            SupplierProductOffer.is_active.is_(True),
            SupplierProductOffer.available_qty > 0,
        )
        .scalar()
    )

    variant_units = dict(
        session.query(SupplierVariantOffer.variant_id, func.sum(SupplierVariantOffer.available_qty))
        .filter(
            SupplierVariantOffer.product_id == product_id,
            SupplierVariantOffer.is_active.is_(True),
            SupplierVariantOffer.available_qty > 0,
        )
        .group_by(SupplierVariantOffer.variant_id)
        .all()
    )

    for variant in session.query(ProductVariant).filter(ProductVariant.product_id == product_id).all():
        variant.in_stock = int(variant_units.get(variant.id) or 0) > 0

    in_stock = int(base_units or 0) > 0 or any(int(units or 0) > 0 for units in variant_units.values())
    product = session.get(Product, product_id)
    if product is not None:
        product.in_stock = in_stock
    return in_stock
