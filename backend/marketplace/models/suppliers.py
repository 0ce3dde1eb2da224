from __future__ import annotations

from ..extensions import db
from ..states import BankVerificationStatus
from ..time_utils import to_utc_z
from .common import status_column, enum_value


class Supplier(db.Model):
    """
    Independent seller fulfilling order items.

    PAYOUT PROFILE: bank details plus an administrative verification status.
    Nothing is ever released to a supplier whose profile is not VERIFIED with
    complete bank details (see payout_service.check_payout_readiness).
    """
    __tablename__ = "suppliers"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    contact_email = db.Column(db.String(255), nullable=True)
    whatsapp_phone = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Payout profile
    is_payout_enabled = db.Column(db.Boolean, nullable=False, default=False)
    bank_name = db.Column(db.String(128), nullable=True)
    bank_code = db.Column(db.String(32), nullable=True)
    bank_country = db.Column(db.String(2), nullable=True, default="NG")
    account_number = db.Column(db.String(32), nullable=True)
    account_name = db.Column(db.String(255), nullable=True)
    bank_verification_status = status_column(
        BankVerificationStatus, default=BankVerificationStatus.UNVERIFIED
    )
    bank_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", foreign_keys=[user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "is_active": self.is_active,
            "is_payout_enabled": self.is_payout_enabled,
            "bank_name": self.bank_name,
            "bank_code": self.bank_code,
            "bank_country": self.bank_country,
            # Never echo full account numbers
            "account_number_last4": (self.account_number or "")[-4:] or None,
            "account_name": self.account_name,
            "bank_verification_status": enum_value(self.bank_verification_status),
            "bank_verified_at": to_utc_z(self.bank_verified_at),
        }
